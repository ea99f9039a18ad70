"""
RSA PKCS#1 v1.5 sign/verify over SHA-256 with cryptography.
Used for the CA's signed revocation receipts.
"""
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives import hashes

from nanoca.common.models import RevocationReceipt
from nanoca.common.utils import b64e, b64d


def sign_bytes(private_key, data: bytes) -> str:
    sig = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    return b64e(sig)


def verify_sig(public_key, data: bytes, sig_b64: str) -> bool:
    try:
        public_key.verify(b64d(sig_b64), data, padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError):
        return False


def sign_receipt(private_key, receipt: RevocationReceipt) -> RevocationReceipt:
    return receipt.model_copy(update={"sig": sign_bytes(private_key, receipt.payload())})


def verify_receipt(ca_cert, receipt: RevocationReceipt) -> bool:
    """Check a revocation receipt against the CA certificate's public key."""
    return verify_sig(ca_cert.public_key(), receipt.payload(), receipt.sig)
