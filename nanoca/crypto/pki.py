"""
X.509 helpers.
Provides load_cert, get_cn, get_cert_fingerprint, verify_cert(cert, ca_cert), load_crl
"""
import datetime

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.asymmetric import padding


def load_cert(pem_bytes):
    """Load certificate from PEM bytes (string or bytes)."""
    if isinstance(pem_bytes, str):
        pem_bytes = pem_bytes.encode()
    return x509.load_pem_x509_certificate(pem_bytes)


def load_cert_file(path: str) -> x509.Certificate:
    with open(path, "rb") as f:
        return load_cert(f.read())


def cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def get_cn(cert_or_name):
    name = cert_or_name.subject if isinstance(cert_or_name, x509.Certificate) else cert_or_name
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else None


def get_cert_fingerprint(cert: x509.Certificate) -> str:
    """Return SHA-256 fingerprint of certificate as hex string."""
    return cert.fingerprint(hashes.SHA256()).hex()


def same_public_key(a, b) -> bool:
    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return a.public_bytes(*fmt) == b.public_bytes(*fmt)


def verify_cert(cert: x509.Certificate, ca_cert: x509.Certificate, check_time: bool = True):
    """
    Verify that `cert` was issued by `ca_cert`.
    Raises ValueError("BAD CERT: ...") on issuer mismatch, bad signature or
    (when check_time) a certificate outside its validity window.
    """
    if cert.issuer != ca_cert.subject:
        raise ValueError("BAD CERT: ISSUER MISMATCH")
    hash_algorithm = cert.signature_hash_algorithm or hashes.SHA256()
    try:
        ca_cert.public_key().verify(
            cert.signature,
            cert.tbs_certificate_bytes,
            padding.PKCS1v15(),
            hash_algorithm,
        )
    except Exception as e:
        raise ValueError(f"BAD CERT: UNTRUSTED or signature invalid ({e})")
    if check_time:
        now = datetime.datetime.now(datetime.timezone.utc)
        if cert.not_valid_before_utc > now or cert.not_valid_after_utc < now:
            raise ValueError("BAD CERT: EXPIRED/NOT YET VALID")
    return True


def is_self_signed(cert: x509.Certificate) -> bool:
    try:
        return verify_cert(cert, cert, check_time=False)
    except ValueError:
        return False


def load_crl(pem_bytes) -> x509.CertificateRevocationList:
    if isinstance(pem_bytes, str):
        pem_bytes = pem_bytes.encode()
    return x509.load_pem_x509_crl(pem_bytes)
