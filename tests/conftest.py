import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from nanoca.common.models import KeyParams, SubjectAttributes
from nanoca.crypto.csr import validate
from nanoca.ca import identity as ca_identity
from nanoca.ca.signing import sign


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("NANOCA_DIR", "NANOCA_CERT_DAYS", "NANOCA_CA_DAYS", "NANOCA_CRL_DAYS",
                "NANOCA_KEY_SIZE", "NANOCA_LOCK_TIMEOUT", "NANOCA_PASSWORD"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(scope="session")
def leaf_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def ca(tmp_path):
    return ca_identity.create(
        str(tmp_path / "ca"),
        SubjectAttributes(common_name="Test Root", organization="nanoca tests"),
        KeyParams(key_size=2048),
    )


@pytest.fixture
def ca_key(ca):
    return ca.load_signing_key()


@pytest.fixture
def csr_bytes(leaf_key):
    def _make(cn="leaf1", extensions=(), encoding=serialization.Encoding.PEM):
        builder = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
        )
        for ext, critical in extensions:
            builder = builder.add_extension(ext, critical=critical)
        return builder.sign(leaf_key, hashes.SHA256()).public_bytes(encoding)
    return _make


@pytest.fixture
def make_request(csr_bytes):
    def _make(cn="leaf1", extensions=()):
        return validate(csr_bytes(cn, extensions))
    return _make


@pytest.fixture
def issue(ca, ca_key, make_request):
    """Sign a fresh request; returns (certificate, serial)."""
    def _issue(cn="leaf1", days=365):
        return sign(ca, make_request(cn), days, ca_key)
    return _issue


@pytest.fixture
def counters(ca):
    """Current (crtserial, crlserial) of the CA fixture."""
    def _read():
        values = []
        for path in (ca.layout.crtserial_path, ca.layout.crlserial_path):
            with open(path) as f:
                values.append(int(f.read()))
        return tuple(values)
    return _read
