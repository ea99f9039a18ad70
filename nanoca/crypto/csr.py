"""
Certificate Signing Requests: creation and admission checks.

A request is admitted for signing iff it parses (PEM or DER) and its
self-signature verifies against its own embedded public key. Subject
semantics, policy and key strength are not checked here.
"""
import os
import logging
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from nanoca.common.errors import ConfigurationError, CryptoFailure, ValidationError
from nanoca.common.models import KeyParams, SubjectAttributes
from nanoca.common.utils import atomic_write, classify_san
from nanoca.crypto.keys import KeyRef, generate_key, save_private_key, remove_quietly

log = logging.getLogger(__name__)


class ValidatedRequest:
    """A request that passed validate(). `raw` is kept verbatim for archiving."""

    def __init__(self, csr: x509.CertificateSigningRequest, raw: bytes):
        self.csr = csr
        self.raw = raw

    @property
    def subject(self) -> x509.Name:
        return self.csr.subject


def validate(raw_request) -> ValidatedRequest:
    if isinstance(raw_request, str):
        raw_request = raw_request.encode()
    try:
        if b"-----BEGIN" in raw_request:
            csr = x509.load_pem_x509_csr(raw_request)
        else:
            csr = x509.load_der_x509_csr(raw_request)
    except ValueError as e:
        raise ValidationError(f"not a well-formed certificate signing request: {e}")
    try:
        signature_ok = csr.is_signature_valid
    except Exception as e:
        raise ValidationError(f"cannot check request signature: {e}")
    if not signature_ok:
        raise ValidationError("request self-signature does not verify")
    return ValidatedRequest(csr, raw_request)


def validate_file(path: str) -> ValidatedRequest:
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise ValidationError(f"cannot read request {path}: {e}")
    return validate(raw)


def create_request(
    key_ref: KeyRef,
    output_path: str,
    subject: SubjectAttributes,
    sans: Iterable[str] = (),
    key_params: Optional[KeyParams] = None,
    password: Optional[bytes] = None,
):
    """
    Write a PEM request for `subject` to `output_path`.
    Uses the key at `key_ref`, or generates one there if it does not exist yet.
    Returns (ValidatedRequest, created_key).
    """
    if os.path.exists(output_path):
        raise ConfigurationError(f"{output_path} already exists")
    names = [classify_san(token) for token in sans]
    key_params = key_params or KeyParams(key_size=2048)

    created_key = False
    if key_ref.exists() or key_ref.is_remote:
        key = key_ref.load(password)
    else:
        key = generate_key(key_params)
        save_private_key(key, key_ref.location, password)
        created_key = True
        log.info("generated %d-bit key at %s", key_params.key_size, key_ref)

    try:
        builder = x509.CertificateSigningRequestBuilder().subject_name(subject.to_name())
        if names:
            builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
        try:
            csr = builder.sign(key, hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise CryptoFailure(f"cannot sign request: {e}")
        pem = csr.public_bytes(serialization.Encoding.PEM)
        atomic_write(output_path, pem)
    except BaseException:
        if created_key:
            log.warning("removing key %s generated for the failed request", key_ref)
            remove_quietly(key_ref.location)
        raise
    return ValidatedRequest(csr, pem), created_key
