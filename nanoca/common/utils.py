"""Helpers: now_utc, b64e, b64d, ca_basename, classify_san, atomic_write."""

import os
import base64
import datetime
import ipaddress
import tempfile
import contextlib

from cryptography import x509

from nanoca.common.errors import IOFailure, ValidationError


def now_utc() -> datetime.datetime:
    """Return current UTC time, truncated to whole seconds (ledger precision)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def b64e(b: bytes) -> str:
    """Base64-encode bytes → UTF-8 string."""
    return base64.b64encode(b).decode()


def b64d(s: str) -> bytes:
    """Base64-decode UTF-8 string → bytes."""
    return base64.b64decode(s)


def ca_basename(common_name: str) -> str:
    """
    File basename of a CA: its Common Name lower-cased with spaces as hyphens.
    "Test Root" -> "test-root"
    """
    name = common_name.strip().lower().replace(" ", "-")
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"cannot derive a CA basename from common name {common_name!r}")
    return name


# -------------------- SUBJECT ALTERNATIVE NAMES -------------------- #

_SAN_PREFIXES = {
    "dns": x509.DNSName,
    "email": x509.RFC822Name,
}


def classify_san(token: str) -> x509.GeneralName:
    """
    Turn one SAN token into a GeneralName.

    Explicit "DNS:", "IP:" and "email:" prefixes win. Otherwise a token that is a
    valid IPv4/IPv6 address becomes an IPAddress, a token with "@" an email and
    anything else a DNS name ("999.1.1.1" is a DNS name).
    """
    token = token.strip()
    if not token:
        raise ValidationError("empty subject alternative name")

    prefix, sep, rest = token.partition(":")
    if sep and prefix.lower() == "ip":
        try:
            return x509.IPAddress(ipaddress.ip_address(rest))
        except ValueError:
            raise ValidationError(f"not an IP address: {rest!r}")
    if sep and prefix.lower() in _SAN_PREFIXES:
        if not rest:
            raise ValidationError(f"empty value in {token!r}")
        return _SAN_PREFIXES[prefix.lower()](rest)

    try:
        return x509.IPAddress(ipaddress.ip_address(token))
    except ValueError:
        pass
    if "@" in token:
        return x509.RFC822Name(token)
    return x509.DNSName(token)


# -------------------- FILE HELPERS -------------------- #

def atomic_write(path: str, data, mode: int = 0o644):
    """
    Replace `path` with `data` (bytes or str) in one rename.
    Readers see either the old content or the new one, never a partial file.
    """
    if isinstance(data, str):
        data = data.encode()
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    except OSError as e:
        raise IOFailure(f"cannot create temporary file in {directory}: {e}")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException as e:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        if isinstance(e, OSError):
            raise IOFailure(f"cannot write {path}: {e}") from e
        raise

