"""
Signing engine: turns a validated request into an issued certificate.

Under the CA lock the serial is read, the certificate is built and checked,
the request is archived as csrs/<serial>.csr, the certificate is written as
crts/<serial>.pem, and only then is the ledger entry committed. The counter is
advanced after the commit. A failure before the commit removes the artifacts
written so far and leaves ledger and counter untouched.
"""
import os
import logging
import datetime
import contextlib
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from nanoca.common.errors import ConfigurationError, CryptoFailure, IOFailure, StateConflict, ValidationError
from nanoca.common.models import EntryState, IssuancePolicy, LedgerEntry
from nanoca.common.utils import atomic_write, now_utc
from nanoca.crypto.csr import ValidatedRequest, validate_file
from nanoca.crypto.pki import cert_pem, verify_cert
from nanoca.storage.ledger import ca_lock, ledger_subject

log = logging.getLogger(__name__)

_KEY_USAGE_FLAGS = (
    "digital_signature", "content_commitment", "key_encipherment", "data_encipherment",
    "key_agreement", "key_cert_sign", "crl_sign", "encipher_only", "decipher_only",
)

# never copied from a request; the engine sets its own
_ENGINE_EXTENSIONS = (x509.BasicConstraints, x509.AuthorityKeyIdentifier)


def _key_usage(names) -> x509.KeyUsage:
    unknown = set(names) - set(_KEY_USAGE_FLAGS)
    if unknown:
        raise ConfigurationError(f"unknown key usage flag(s): {', '.join(sorted(unknown))}")
    return x509.KeyUsage(**{flag: flag in names for flag in _KEY_USAGE_FLAGS})


def _request_extensions(request: ValidatedRequest):
    try:
        return list(request.csr.extensions)
    except (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType) as e:
        raise ValidationError(f"request carries unreadable extensions: {e}")


def build_certificate(identity, ca_key, request: ValidatedRequest, serial: int,
                      not_before: datetime.datetime, not_after: datetime.datetime,
                      policy: Optional[IssuancePolicy] = None) -> x509.Certificate:
    """Build and sign (SHA-256) the certificate for `request` with the given serial."""
    policy = policy or IssuancePolicy()
    builder = (
        x509.CertificateBuilder()
        .subject_name(request.subject)
        .issuer_name(identity.subject)
        .public_key(request.csr.public_key())
        .serial_number(serial)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(identity.certificate.public_key()),
            critical=False,
        )
    )

    has_key_usage = False
    for ext in _request_extensions(request):
        if isinstance(ext.value, x509.BasicConstraints):
            if ext.value.ca:
                raise ValidationError("request asks for CA:true; only CA:false certificates are issued")
            continue
        if isinstance(ext.value, _ENGINE_EXTENSIONS) or not policy.copy_extensions:
            continue
        if isinstance(ext.value, x509.KeyUsage):
            has_key_usage = True
        builder = builder.add_extension(ext.value, critical=ext.critical)
    if not has_key_usage and policy.default_key_usage:
        builder = builder.add_extension(_key_usage(policy.default_key_usage), critical=True)

    try:
        cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
    except (ValueError, TypeError) as e:
        raise CryptoFailure(f"signing failed: {e}")
    try:
        verify_cert(cert, identity.certificate, check_time=False)
    except ValueError as e:
        raise CryptoFailure(f"freshly signed certificate does not verify: {e}")
    return cert


def validity_window(identity, days: int, now: Optional[datetime.datetime] = None):
    """[now, now + days], with the end capped at the CA's own not-after."""
    if days <= 0:
        raise ValidationError(f"validity must be a positive number of days, got {days}")
    now = now or now_utc()
    if identity.not_after <= now:
        raise ConfigurationError("the CA certificate has expired")
    return now, min(now + datetime.timedelta(days=days), identity.not_after)


def _discard(*paths):
    for path in paths:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)


def sign(identity, request: ValidatedRequest, validity_days: int, ca_key,
         policy: Optional[IssuancePolicy] = None,
         output_path: Optional[str] = None, lock_timeout: float = 10.0):
    """
    Issue a certificate for `request`.
    Returns (certificate, serial).
    """
    layout = identity.layout
    ledger = identity.ledger

    with ca_lock(layout, lock_timeout):
        serial = ledger.next_serial()
        not_before, not_after = validity_window(identity, validity_days)
        cert = build_certificate(identity, ca_key, request, serial, not_before, not_after, policy)

        csr_path = layout.archived_request_path(serial)
        crt_path = layout.issued_cert_path(serial)
        entry = LedgerEntry(
            state=EntryState.VALID,
            expiry=cert.not_valid_after_utc,
            serial=serial,
            subject=ledger_subject(cert.subject),
        )
        try:
            atomic_write(csr_path, request.raw)
            atomic_write(crt_path, cert_pem(cert))
            ledger.append(entry)
        except BaseException:
            log.warning("signing serial %d aborted; removing its artifacts", serial)
            _discard(csr_path, crt_path)
            raise

        try:
            ledger.advance_serial(serial)
        except IOFailure as e:
            # the ledger already holds the entry; next_serial() skips past it
            log.warning("serial %d committed but crtserial not advanced: %s", serial, e)

    log.info("issued serial %d to %s, expires %s", serial, entry.subject, entry.expiry.isoformat())
    if output_path:
        atomic_write(output_path, cert_pem(cert))
    return cert, serial


def resign(identity, serial: int, ca_key, policy: Optional[IssuancePolicy] = None,
           output_path: Optional[str] = None, lock_timeout: float = 10.0) -> x509.Certificate:
    """
    Regenerate crts/<serial>.pem from the archived request, keeping the serial
    and the recorded expiry. The ledger is not modified.
    """
    layout = identity.layout
    with ca_lock(layout, lock_timeout):
        entry = identity.ledger.get(serial)
        if entry.state == EntryState.REVOKED:
            raise StateConflict(f"certificate {serial} is revoked and cannot be re-signed")
        now = now_utc()
        if entry.effective_state(now) == EntryState.EXPIRED:
            raise StateConflict(f"certificate {serial} has expired and cannot be re-signed")

        request = validate_file(layout.archived_request_path(serial))
        cert = build_certificate(identity, ca_key, request, serial, now, entry.expiry, policy)
        atomic_write(layout.issued_cert_path(serial), cert_pem(cert))

    log.info("re-signed serial %d", serial)
    if output_path:
        atomic_write(output_path, cert_pem(cert))
    return cert
