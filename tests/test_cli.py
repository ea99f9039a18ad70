import os
import json

import pytest

from nanoca.cli import PASSWORD_REMINDER, main
from nanoca.ca import identity as ca_identity
from nanoca.ca.crl import crl_number, crl_reason, load_crl
from nanoca.common.models import EntryState


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _create_ca(ca_dir, *extra):
    return main(["-d", str(ca_dir), "create-ca", "--cn", "Test Root", "--key-size", "2048", *extra])


def _request(workdir, cn="leaf1", *extra):
    csr = workdir / f"{cn}.csr"
    assert main(["create-request", str(workdir / f"{cn}.key"), str(csr), "--cn", cn, *extra]) == 0
    return csr


def test_end_to_end(workdir, capsys):
    ca_dir = workdir / "ca"
    assert _create_ca(ca_dir) == 0
    csr = _request(workdir, "leaf1", "--san", "www.example.com")
    assert main(["-d", str(ca_dir), "sign", str(csr), "--days", "365", "-o", str(workdir / "leaf1.pem")]) == 0
    assert (workdir / "leaf1.pem").exists()

    identity = ca_identity.locate(str(ca_dir))
    entries = identity.ledger.entries()
    assert [(e.serial, e.state) for e in entries] == [(1, EntryState.VALID)]

    capsys.readouterr()
    assert main(["-d", str(ca_dir), "list"]) == 0
    out = capsys.readouterr().out
    assert "valid" in out and "CN=leaf1" in out

    assert main(["-d", str(ca_dir), "revoke", "1", "--reason", "superseded"]) == 0
    assert identity.ledger.get(1).state == EntryState.REVOKED

    assert main(["-d", str(ca_dir), "gen-crl"]) == 0
    crl = load_crl(identity)
    revoked = crl.get_revoked_certificate_by_serial_number(1)
    assert revoked is not None
    assert crl_reason(revoked) == "superseded"
    assert crl_number(crl) == 1


def test_dir_from_environment(workdir, monkeypatch, capsys):
    ca_dir = workdir / "ca"
    monkeypatch.setenv("NANOCA_DIR", str(ca_dir))
    assert main(["create-ca", "--cn", "Env Root", "--key-size", "2048"]) == 0
    capsys.readouterr()
    assert main(["info"]) == 0
    info = json.loads(capsys.readouterr().out)
    assert info["next_serial"] == 1
    assert info["subject"] == "CN=Env Root"


def test_create_ca_in_non_empty_directory(workdir, capsys):
    ca_dir = workdir / "busy"
    ca_dir.mkdir()
    (ca_dir / "file").write_text("x")
    assert _create_ca(ca_dir) == 2
    assert "not empty" in capsys.readouterr().err
    assert os.listdir(ca_dir) == ["file"]


def test_sign_outside_a_ca(workdir, capsys):
    csr = _request(workdir)
    assert main(["-d", str(workdir / "nothing"), "sign", str(csr)]) == 2


def test_sign_invalid_request(workdir):
    ca_dir = workdir / "ca"
    assert _create_ca(ca_dir) == 0
    bogus = workdir / "bogus.csr"
    bogus.write_bytes(b"not a request")
    assert main(["-d", str(ca_dir), "sign", str(bogus)]) == 3
    assert ca_identity.locate(str(ca_dir)).ledger.entries() == []


def test_double_revoke_exit_code(workdir):
    ca_dir = workdir / "ca"
    assert _create_ca(ca_dir) == 0
    assert main(["-d", str(ca_dir), "sign", str(_request(workdir))]) == 0
    assert main(["-d", str(ca_dir), "revoke", "1"]) == 0
    assert main(["-d", str(ca_dir), "revoke", "1"]) == 4
    assert main(["-d", str(ca_dir), "revoke", "2"]) == 4


def test_resign_command(workdir):
    ca_dir = workdir / "ca"
    assert _create_ca(ca_dir) == 0
    assert main(["-d", str(ca_dir), "sign", str(_request(workdir))]) == 0
    assert main(["-d", str(ca_dir), "resign", "1", "-o", str(workdir / "again.pem")]) == 0
    assert (workdir / "again.pem").exists()
    assert len(ca_identity.locate(str(ca_dir)).ledger.entries()) == 1


def test_blank_common_name(workdir):
    assert main(["-d", str(workdir / "ca"), "create-ca", "--cn", "  ", "--key-size", "2048"]) == 3
    assert not (workdir / "ca").exists()


def test_encrypted_ca_with_password_from_environment(workdir, monkeypatch, capsys):
    monkeypatch.setenv("NANOCA_PASSWORD", "s3cret")
    ca_dir = workdir / "ca"
    assert _create_ca(ca_dir, "--encrypt") == 0
    assert PASSWORD_REMINDER in capsys.readouterr().out
    assert ca_identity.locate(str(ca_dir)).key_is_encrypted()
    assert main(["-d", str(ca_dir), "sign", str(_request(workdir))]) == 0

    monkeypatch.setenv("NANOCA_PASSWORD", "wrong")
    assert main(["-d", str(ca_dir), "gen-crl"]) == 5


def test_key_path_that_is_a_directory(workdir, capsys):
    (workdir / "keys").mkdir()
    assert main(["create-request", str(workdir / "keys"), str(workdir / "x.csr"), "--cn", "leaf"]) == 6
    assert "❌" in capsys.readouterr().err
    assert not (workdir / "x.csr").exists()


@pytest.mark.parametrize("command", [
    ["sign", "REQUEST", "--days", "0"],
    ["gen-crl", "--days", "0"],
])
def test_explicit_zero_days_is_rejected(workdir, command):
    ca_dir = workdir / "ca"
    assert _create_ca(ca_dir) == 0
    csr = _request(workdir)
    argv = [str(csr) if a == "REQUEST" else a for a in command]
    assert main(["-d", str(ca_dir), *argv]) == 3
    identity = ca_identity.locate(str(ca_dir))
    assert identity.ledger.entries() == []
    assert not os.path.exists(identity.layout.crl_path)


def test_create_ca_with_zero_days(workdir):
    assert _create_ca(workdir / "ca", "--days", "0") == 3
    assert not (workdir / "ca").exists()
