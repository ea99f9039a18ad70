"""
Revocation engine: Valid -> Revoked for one serial.
Re-revoking is refused, so a recorded time and reason are never overwritten.
The CRL is not regenerated here; publishing is a separate command.
"""
import os
import logging

from cryptography import x509

from nanoca.common.errors import AlreadyRevoked, IOFailure, NotFound, StateConflict, ValidationError
from nanoca.common.models import EntryState, RevocationReceipt
from nanoca.common.utils import atomic_write, now_utc
from nanoca.crypto.sign import sign_receipt
from nanoca.storage.ledger import ca_lock

log = logging.getLogger(__name__)

REASONS = {
    "unspecified": x509.ReasonFlags.unspecified,
    "keyCompromise": x509.ReasonFlags.key_compromise,
    "CACompromise": x509.ReasonFlags.ca_compromise,
    "affiliationChanged": x509.ReasonFlags.affiliation_changed,
    "superseded": x509.ReasonFlags.superseded,
    "cessationOfOperation": x509.ReasonFlags.cessation_of_operation,
    "certificateHold": x509.ReasonFlags.certificate_hold,
    "privilegeWithdrawn": x509.ReasonFlags.privilege_withdrawn,
    "AACompromise": x509.ReasonFlags.aa_compromise,
}


def normalize_reason(reason: str) -> str:
    """Accept any casing of the RFC 5280 reason names."""
    by_lower = {name.lower(): name for name in REASONS}
    try:
        return by_lower[reason.strip().lower()]
    except KeyError:
        raise ValidationError(f"unknown revocation reason {reason!r}; use one of: {', '.join(REASONS)}")


def revoke(identity, serial: int, reason: str, ca_key, lock_timeout: float = 10.0):
    """
    Revoke `serial`. Returns (revoked LedgerEntry, RevocationReceipt).
    Raises NotFound, AlreadyRevoked or StateConflict (expired entry).
    """
    reason = normalize_reason(reason)
    layout = identity.layout
    ledger = identity.ledger

    with ca_lock(layout, lock_timeout):
        entry = ledger.find(serial)
        if entry is None or not os.path.isfile(layout.issued_cert_path(serial)):
            raise NotFound(f"certificate with serial {serial} does not exist")
        if entry.state == EntryState.REVOKED:
            raise AlreadyRevoked(
                f"certificate {serial} was already revoked at {entry.revoked_at.isoformat()} ({entry.reason})"
            )
        if entry.state == EntryState.EXPIRED:
            raise StateConflict(f"certificate {serial} is marked expired")

        revoked_at = now_utc()
        receipt = sign_receipt(ca_key, RevocationReceipt(
            serial=serial, subject=entry.subject, revoked_at=revoked_at, reason=reason,
        ))
        updated = entry.model_copy(update={
            "state": EntryState.REVOKED, "revoked_at": revoked_at, "reason": reason,
        })
        atomic_write(layout.receipt_path(serial), receipt.model_dump_json(indent=2))
        try:
            ledger.replace(updated)
        except BaseException:
            os.unlink(layout.receipt_path(serial))
            raise

    log.info("revoked serial %d (%s)", serial, reason)
    return updated, receipt


def load_receipt(identity, serial: int) -> RevocationReceipt:
    path = identity.layout.receipt_path(serial)
    if not os.path.isfile(path):
        raise NotFound(f"no revocation receipt for serial {serial}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = f.read()
    except OSError as e:
        raise IOFailure(f"cannot read {path}: {e}") from e
    return RevocationReceipt.model_validate_json(data)
