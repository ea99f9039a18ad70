import os

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from nanoca.common.errors import ConfigurationError, CryptoFailure, IOFailure, ValidationError
from nanoca.common.models import KeyParams, SubjectAttributes
from nanoca.crypto import csr as csr_module
from nanoca.crypto.csr import create_request, validate, validate_file
from nanoca.crypto.keys import KeyRef, generate_key, is_encrypted, load_private_key, save_private_key


def test_validate_pem(csr_bytes):
    request = validate(csr_bytes("leaf1"))
    assert request.subject.rfc4514_string() == "CN=leaf1"
    assert request.raw.startswith(b"-----BEGIN CERTIFICATE REQUEST-----")


def test_validate_der(csr_bytes):
    raw = csr_bytes("leaf1", encoding=serialization.Encoding.DER)
    assert validate(raw).raw == raw


@pytest.mark.parametrize("raw", [b"", b"hello", b"-----BEGIN CERTIFICATE REQUEST-----\nAAAA\n-----END CERTIFICATE REQUEST-----\n"])
def test_validate_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        validate(raw)


def test_validate_rejects_bad_self_signature(csr_bytes):
    raw = bytearray(csr_bytes("leaf1", encoding=serialization.Encoding.DER))
    raw[-1] ^= 0x01     # last byte belongs to the signature value
    with pytest.raises(ValidationError):
        validate(bytes(raw))


def test_validate_file_missing(tmp_path):
    with pytest.raises(ValidationError):
        validate_file(str(tmp_path / "missing.csr"))


def test_create_request_generates_key(tmp_path):
    key_path = tmp_path / "leaf.key"
    out = tmp_path / "leaf.csr"
    request, created = create_request(
        KeyRef.parse(str(key_path)), str(out),
        SubjectAttributes(common_name="leaf1", country="de"),
        sans=["www.example.com", "10.0.0.5", "999.1.1.1"],
        key_params=KeyParams(key_size=2048),
    )
    assert created
    assert os.stat(key_path).st_mode & 0o777 == 0o600
    loaded = validate_file(str(out))
    assert loaded.subject == request.subject
    assert "C=DE" in loaded.subject.rfc4514_string()
    san = loaded.csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["www.example.com", "999.1.1.1"]
    assert [str(ip) for ip in san.get_values_for_type(x509.IPAddress)] == ["10.0.0.5"]


def test_create_request_reuses_existing_key(tmp_path):
    key_path = tmp_path / "leaf.key"
    key = generate_key(KeyParams(key_size=2048))
    save_private_key(key, str(key_path))
    request, created = create_request(KeyRef.parse(str(key_path)), str(tmp_path / "a.csr"),
                                      SubjectAttributes(common_name="leaf1"))
    assert not created
    assert request.csr.public_key().public_numbers() == key.public_key().public_numbers()


def test_create_request_encrypted_new_key(tmp_path):
    key_path = tmp_path / "leaf.key"
    create_request(KeyRef.parse(str(key_path)), str(tmp_path / "a.csr"),
                   SubjectAttributes(common_name="leaf1"), key_params=KeyParams(key_size=2048),
                   password=b"pw")
    assert is_encrypted(str(key_path))


def test_create_request_refuses_existing_output(tmp_path):
    out = tmp_path / "leaf.csr"
    out.write_text("already here")
    with pytest.raises(ConfigurationError):
        create_request(KeyRef.parse(str(tmp_path / "leaf.key")), str(out), SubjectAttributes(common_name="x"))
    assert not (tmp_path / "leaf.key").exists()


def test_remote_key_needs_an_engine(tmp_path):
    ref = KeyRef.parse("pkcs11:token=ca;object=signing")
    assert ref.is_remote
    with pytest.raises(CryptoFailure):
        create_request(ref, str(tmp_path / "leaf.csr"), SubjectAttributes(common_name="x"))
    assert not (tmp_path / "leaf.csr").exists()


def test_failed_request_removes_generated_key(tmp_path, monkeypatch):
    def boom(path, data, mode=0o644):
        raise IOFailure("disk full")

    monkeypatch.setattr(csr_module, "atomic_write", boom)
    key_path = tmp_path / "leaf.key"
    with pytest.raises(IOFailure):
        create_request(KeyRef.parse(str(key_path)), str(tmp_path / "leaf.csr"),
                       SubjectAttributes(common_name="x"), key_params=KeyParams(key_size=2048))
    assert not key_path.exists()


def test_unreadable_key_is_an_io_failure(tmp_path):
    key_dir = tmp_path / "leaf.key"
    key_dir.mkdir()
    with pytest.raises(IOFailure):
        is_encrypted(str(key_dir))
    with pytest.raises(IOFailure):
        load_private_key(str(key_dir))
    with pytest.raises(IOFailure):
        create_request(KeyRef.parse(str(key_dir)), str(tmp_path / "leaf.csr"), SubjectAttributes(common_name="x"))
    assert not (tmp_path / "leaf.csr").exists()


def test_default_request_key_size(tmp_path):
    key_path = tmp_path / "leaf.key"
    create_request(KeyRef.parse(str(key_path)), str(tmp_path / "leaf.csr"), SubjectAttributes(common_name="x"))
    assert load_private_key(str(key_path)).key_size == 2048
