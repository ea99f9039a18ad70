"""
RSA key generation, PEM load/save, and key references.
A key reference is either a local PEM path or a PKCS#11 URI ("pkcs11:...").
Remote keys can only be used through a signing engine, and none is bundled.
"""
import os
import contextlib
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from nanoca.common.errors import CryptoFailure, IOFailure
from nanoca.common.models import KeyParams
from nanoca.common.utils import atomic_write


class KeyRef:
    def __init__(self, location: str):
        self.location = location

    @classmethod
    def parse(cls, text: str) -> "KeyRef":
        return cls(text.strip())

    @property
    def is_remote(self) -> bool:
        return self.location.lower().startswith("pkcs11:")

    def exists(self) -> bool:
        return not self.is_remote and os.path.exists(self.location)

    def load(self, password: Optional[bytes] = None):
        if self.is_remote:
            raise CryptoFailure(f"{self.location}: no PKCS#11 engine is available to use this key")
        return load_private_key(self.location, password)

    def __str__(self):
        return self.location


def generate_key(params: Optional[KeyParams] = None):
    params = params or KeyParams()
    try:
        return rsa.generate_private_key(public_exponent=params.public_exponent, key_size=params.key_size)
    except (ValueError, TypeError) as e:
        raise CryptoFailure(f"key generation failed: {e}")


def save_private_key(key, path: str, password: Optional[bytes] = None):
    """PKCS#8 PEM, readable by the owner only."""
    enc = serialization.BestAvailableEncryption(password) if password else serialization.NoEncryption()
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=enc,
    )
    atomic_write(path, pem, mode=0o600)


def load_private_key(path: str, password: Optional[bytes] = None):
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise IOFailure(f"cannot read key {path}: {e}") from e
    try:
        return serialization.load_pem_private_key(data, password=password or None)
    except TypeError as e:
        # raised for a missing password on an encrypted key (and the reverse)
        raise CryptoFailure(f"{path}: {e}")
    except ValueError as e:
        raise CryptoFailure(f"{path}: cannot load private key (wrong password?): {e}")


def is_encrypted(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            return b"ENCRYPTED" in f.read()
    except OSError as e:
        raise IOFailure(f"cannot read key {path}: {e}") from e


def remove_quietly(path: str):
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)
