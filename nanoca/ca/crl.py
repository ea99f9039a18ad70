"""
CRL generator. Each run publishes a complete CRL of every Revoked ledger entry
under the next CRL number and overwrites public/<basename>.crl.
"""
import os
import logging
import datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from nanoca.common.errors import CryptoFailure, IOFailure, NotFound, ValidationError
from nanoca.common.models import EntryState
from nanoca.common.utils import atomic_write, now_utc
from nanoca.crypto.pki import load_crl as parse_crl
from nanoca.ca.revocation import REASONS
from nanoca.storage.ledger import ca_lock

log = logging.getLogger(__name__)


def _revoked_certificate(entry) -> x509.RevokedCertificate:
    builder = (
        x509.RevokedCertificateBuilder()
        .serial_number(entry.serial)
        .revocation_date(entry.revoked_at)
    )
    reason = REASONS.get(entry.reason or "unspecified", x509.ReasonFlags.unspecified)
    # RFC 5280 5.3.1: leave the reason code out rather than say "unspecified"
    if reason != x509.ReasonFlags.unspecified:
        builder = builder.add_extension(x509.CRLReason(reason), critical=False)
    return builder.build()


def regenerate(identity, crl_validity_days: int, ca_key, lock_timeout: float = 10.0) -> x509.CertificateRevocationList:
    if crl_validity_days <= 0:
        raise ValidationError(f"CRL validity must be a positive number of days, got {crl_validity_days}")
    layout = identity.layout
    ledger = identity.ledger

    with ca_lock(layout, lock_timeout):
        number = ledger.next_crl_number()
        now = now_utc()
        revoked = [e for e in ledger.entries() if e.state == EntryState.REVOKED]

        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(identity.subject)
            .last_update(now)
            .next_update(now + datetime.timedelta(days=crl_validity_days))
            .add_extension(x509.CRLNumber(number), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(identity.certificate.public_key()),
                critical=False,
            )
        )
        for entry in revoked:
            builder = builder.add_revoked_certificate(_revoked_certificate(entry))
        try:
            crl = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise CryptoFailure(f"CRL signing failed: {e}")

        # a crash between these two writes skips a CRL number, never repeats one
        ledger.set_crl_number(number + 1)
        try:
            atomic_write(layout.crl_path, crl.public_bytes(serialization.Encoding.PEM))
        except BaseException:
            log.warning("CRL %d not published; restoring crlserial", number)
            ledger.set_crl_number(number)
            raise

    log.info("published CRL %d with %d revoked certificate(s)", number, len(revoked))
    return crl


def load_crl(identity) -> x509.CertificateRevocationList:
    """The currently published CRL."""
    path = identity.layout.crl_path
    if not os.path.isfile(path):
        raise NotFound("no CRL has been published yet")
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise IOFailure(f"cannot read {path}: {e}") from e
    return parse_crl(data)


def crl_number(crl: x509.CertificateRevocationList) -> int:
    return crl.extensions.get_extension_for_class(x509.CRLNumber).value.crl_number


def crl_serials(crl: x509.CertificateRevocationList) -> set:
    return {rc.serial_number for rc in crl}


def crl_reason(revoked: x509.RevokedCertificate) -> str:
    try:
        flag = revoked.extensions.get_extension_for_class(x509.CRLReason).value.reason
    except x509.ExtensionNotFound:
        return "unspecified"
    return next((name for name, f in REASONS.items() if f == flag), flag.value)
