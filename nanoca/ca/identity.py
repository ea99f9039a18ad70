"""
CA identity: the CA's key and self-signed root certificate.

A directory is a CA iff exactly one private/*.key exists and the matching
public/<basename>.crt (self-signed), private/crtdb, private/crtserial,
private/crlserial, crts/ and csrs/ are all present. Anything less, or
more than one key, is refused.
"""
import os
import shutil
import logging
import datetime
import contextlib
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from nanoca.common.errors import ConfigurationError, CryptoFailure, IOFailure, ValidationError
from nanoca.common.models import EntryState, KeyParams, SubjectAttributes
from nanoca.common.utils import atomic_write, ca_basename, now_utc
from nanoca.crypto.keys import generate_key, is_encrypted, load_private_key, save_private_key
from nanoca.crypto.pki import cert_pem, get_cn, get_cert_fingerprint, is_self_signed, load_cert_file, same_public_key
from nanoca.storage.layout import CALayout
from nanoca.storage.ledger import Ledger

log = logging.getLogger(__name__)

CA_VALIDITY_DAYS = 3650


class CAIdentity:
    def __init__(self, layout: CALayout, certificate: x509.Certificate):
        self.layout = layout
        self.certificate = certificate
        self.ledger = Ledger(layout)

    @property
    def basename(self) -> str:
        return self.layout.basename

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc

    def key_is_encrypted(self) -> bool:
        return is_encrypted(self.layout.key_path)

    def load_signing_key(self, password: Optional[bytes] = None):
        """Load the CA key and make sure it belongs to the root certificate."""
        key = load_private_key(self.layout.key_path, password)
        if not same_public_key(key.public_key(), self.certificate.public_key()):
            raise ConfigurationError(f"{self.layout.key_path} does not match {self.layout.cert_path}")
        return key

    def describe(self) -> dict:
        now = now_utc()
        counts = {state.name.lower(): 0 for state in EntryState}
        for entry in self.ledger.entries():
            counts[entry.effective_state(now).name.lower()] += 1
        return {
            "directory": self.layout.root,
            "subject": self.subject.rfc4514_string(),
            "not_before": self.certificate.not_valid_before_utc.isoformat(),
            "not_after": self.not_after.isoformat(),
            "fingerprint": get_cert_fingerprint(self.certificate),
            "next_serial": self.ledger.next_serial(),
            "next_crl_number": self.ledger.next_crl_number(),
            "certificates": counts,
        }


def locate(directory: str) -> CAIdentity:
    """Resolve `directory` to its CA identity, or raise ConfigurationError."""
    if not os.path.isdir(directory):
        raise ConfigurationError(f"{directory} is not a directory")
    keys = CALayout.key_files(directory)
    if not keys:
        raise ConfigurationError(f"{directory} is not a CA: no private/*.key")
    if len(keys) > 1:
        raise ConfigurationError(f"{directory} is ambiguous: {len(keys)} private keys found")

    basename = os.path.basename(keys[0])[:-len(".key")]
    layout = CALayout(directory, basename)
    missing = [p for p in layout.required_files() if not os.path.isfile(p)]
    missing += [d for d in (layout.crts_dir, layout.csrs_dir) if not os.path.isdir(d)]
    if missing:
        raise ConfigurationError(f"{directory} is not a complete CA, missing: {', '.join(missing)}")

    try:
        cert = load_cert_file(layout.cert_path)
    except ValueError as e:
        raise ConfigurationError(f"{layout.cert_path}: not a PEM certificate ({e})")
    except OSError as e:
        raise IOFailure(f"cannot read {layout.cert_path}: {e}") from e
    if not is_self_signed(cert):
        raise ConfigurationError(f"{layout.cert_path} is not a self-signed certificate")
    return CAIdentity(layout, cert)


def is_ca(directory: str) -> bool:
    try:
        locate(directory)
        return True
    except ConfigurationError:
        return False


def _build_root(key, subject: x509.Name, days: int) -> x509.Certificate:
    now = now_utc()
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )


def create(
    directory: str,
    subject: SubjectAttributes,
    key_params: Optional[KeyParams] = None,
    password: Optional[bytes] = None,
    days: int = CA_VALIDITY_DAYS,
) -> CAIdentity:
    """
    Initialize a new CA in `directory`, which must be absent or empty.
    On any failure the directory is put back the way it was found.
    """
    key_params = key_params or KeyParams()
    if days <= 0:
        raise ValidationError(f"validity must be a positive number of days, got {days}")
    if os.path.exists(directory):
        if not os.path.isdir(directory):
            raise ConfigurationError(f"{directory} exists and is not a directory")
        try:
            existing = os.listdir(directory)
        except OSError as e:
            raise IOFailure(f"cannot read {directory}: {e}") from e
        if existing:
            raise ConfigurationError(f"{directory} is not empty")
        created_root = False
    else:
        created_root = True

    basename = ca_basename(subject.common_name)
    layout = CALayout(directory, basename)
    try:
        for d in layout.directories():
            os.makedirs(d, exist_ok=True)
        os.chmod(layout.private_dir, 0o700)

        key = generate_key(key_params)
        try:
            cert = _build_root(key, subject.to_name(), days)
        except (ValueError, TypeError) as e:
            raise CryptoFailure(f"cannot self-sign root certificate: {e}")
        save_private_key(key, layout.key_path, password)
        atomic_write(layout.cert_path, cert_pem(cert))
        Ledger.initialize(layout)
    except BaseException as e:
        log.warning("CA creation in %s failed, rolling back", directory)
        _rollback(directory, created_root)
        if isinstance(e, OSError):
            raise IOFailure(f"cannot create CA in {directory}: {e}") from e
        raise

    log.info("created CA %r (%s) in %s", get_cn(cert), basename, layout.root)
    return CAIdentity(layout, cert)


def _rollback(directory: str, created_root: bool):
    if created_root:
        shutil.rmtree(directory, ignore_errors=True)
        return
    # the directory was empty before create(); everything inside is ours
    for name in os.listdir(directory):
        path = os.path.join(directory, name)
        with contextlib.suppress(OSError):
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.unlink(path)
