"""Settings from environment variables (a .env file is loaded by the CLI)."""

import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as ModelValidationError

from nanoca.common.errors import ConfigurationError


class Settings(BaseModel):
    ca_dir: str = "."
    cert_days: int = Field(default=365, gt=0)
    ca_days: int = Field(default=3650, gt=0)
    crl_days: int = Field(default=30, gt=0)
    key_size: int = Field(default=4096, ge=2048)
    lock_timeout: float = Field(default=10.0, ge=0)
    password: Optional[str] = None


_ENV = {
    "ca_dir": "NANOCA_DIR",
    "cert_days": "NANOCA_CERT_DAYS",
    "ca_days": "NANOCA_CA_DAYS",
    "crl_days": "NANOCA_CRL_DAYS",
    "key_size": "NANOCA_KEY_SIZE",
    "lock_timeout": "NANOCA_LOCK_TIMEOUT",
    "password": "NANOCA_PASSWORD",
}


def get_settings() -> Settings:
    """Build settings from the current environment."""
    values = {field: os.getenv(var) for field, var in _ENV.items()}
    try:
        return Settings(**{k: v for k, v in values.items() if v not in (None, "")})
    except ModelValidationError as e:
        raise ConfigurationError(f"invalid NANOCA_* environment setting: {e}")
