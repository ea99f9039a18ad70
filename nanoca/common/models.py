"""Pydantic models: subject, key params, issuance policy, ledger entry, revocation receipt."""

import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator
from cryptography import x509
from cryptography.x509.oid import NameOID


# -------------------- SUBJECT -------------------- #

class SubjectAttributes(BaseModel):
    common_name: str
    country: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None
    organization: Optional[str] = None
    organizational_unit: Optional[str] = None
    email: Optional[str] = None

    @field_validator("common_name")
    @classmethod
    def _cn_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Common Name is mandatory")
        return v

    @field_validator("country")
    @classmethod
    def _two_letter_country(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if len(v) != 2 or not v.isalpha():
            raise ValueError("country must be a two-letter code")
        return v.upper()

    def to_name(self) -> x509.Name:
        pairs = [
            (NameOID.COUNTRY_NAME, self.country),
            (NameOID.STATE_OR_PROVINCE_NAME, self.state),
            (NameOID.LOCALITY_NAME, self.locality),
            (NameOID.ORGANIZATION_NAME, self.organization),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
            (NameOID.COMMON_NAME, self.common_name),
            (NameOID.EMAIL_ADDRESS, self.email),
        ]
        return x509.Name([x509.NameAttribute(oid, value) for oid, value in pairs if value])


# -------------------- KEYS / POLICY -------------------- #

class KeyParams(BaseModel):
    key_size: int = Field(default=4096, ge=2048)
    public_exponent: int = 65537


class IssuancePolicy(BaseModel):
    """What the signing engine may put into an issued certificate."""
    copy_extensions: bool = True
    # x509.KeyUsage flag names, used only when the request carries no KeyUsage
    default_key_usage: Tuple[str, ...] = ("digital_signature", "key_encipherment")


# -------------------- LEDGER -------------------- #

class EntryState(str, Enum):
    VALID = "V"
    REVOKED = "R"
    EXPIRED = "E"


class LedgerEntry(BaseModel):
    """
    One issued certificate.
    A Valid entry carries no revocation data; a Revoked entry always does.
    """
    state: EntryState
    expiry: datetime.datetime
    revoked_at: Optional[datetime.datetime] = None
    reason: Optional[str] = None
    serial: int = Field(gt=0)
    filename: str = "unknown"
    subject: str

    @model_validator(mode="after")
    def _revocation_iff_revoked(self):
        has_revocation = self.revoked_at is not None
        if (self.state == EntryState.REVOKED) != has_revocation:
            raise ValueError(f"serial {self.serial}: revocation data must be present iff state is Revoked")
        if self.reason is not None and not has_revocation:
            raise ValueError(f"serial {self.serial}: reason without revocation time")
        return self

    def effective_state(self, now: datetime.datetime) -> EntryState:
        """Valid entries past their expiry read as Expired; nothing is rewritten."""
        if self.state == EntryState.VALID and self.expiry <= now:
            return EntryState.EXPIRED
        return self.state


# -------------------- REVOCATION RECEIPT -------------------- #

class RevocationReceipt(BaseModel):
    type: str = "revocation"
    serial: int
    subject: str
    revoked_at: datetime.datetime
    reason: str
    sig: str = ""          # base64 RSA signature over payload()

    def payload(self) -> bytes:
        return self.model_dump_json(exclude={"sig"}).encode()
