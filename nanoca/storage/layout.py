"""Paths of every artifact inside one CA directory."""

import os
import glob


class CALayout:
    """
    <root>/public/<basename>.crt     root certificate
    <root>/public/<basename>.crl     latest CRL
    <root>/private/<basename>.key    CA private key (0600)
    <root>/private/crtserial         next certificate serial
    <root>/private/crlserial         next CRL number
    <root>/private/crtdb             ledger
    <root>/crts/<serial>.pem         issued certificates
    <root>/csrs/<serial>.csr         archived requests
    """

    def __init__(self, root: str, basename: str):
        self.root = os.path.abspath(root)
        self.basename = basename

    @classmethod
    def key_files(cls, root: str):
        return sorted(glob.glob(os.path.join(os.path.abspath(root), "private", "*.key")))

    @property
    def public_dir(self):
        return os.path.join(self.root, "public")

    @property
    def private_dir(self):
        return os.path.join(self.root, "private")

    @property
    def crts_dir(self):
        return os.path.join(self.root, "crts")

    @property
    def csrs_dir(self):
        return os.path.join(self.root, "csrs")

    @property
    def cert_path(self):
        return os.path.join(self.public_dir, f"{self.basename}.crt")

    @property
    def crl_path(self):
        return os.path.join(self.public_dir, f"{self.basename}.crl")

    @property
    def key_path(self):
        return os.path.join(self.private_dir, f"{self.basename}.key")

    @property
    def crtserial_path(self):
        return os.path.join(self.private_dir, "crtserial")

    @property
    def crlserial_path(self):
        return os.path.join(self.private_dir, "crlserial")

    @property
    def crtdb_path(self):
        return os.path.join(self.private_dir, "crtdb")

    @property
    def lock_path(self):
        return os.path.join(self.private_dir, ".lock")

    def issued_cert_path(self, serial: int) -> str:
        return os.path.join(self.crts_dir, f"{serial}.pem")

    def archived_request_path(self, serial: int) -> str:
        return os.path.join(self.csrs_dir, f"{serial}.csr")

    def receipt_path(self, serial: int) -> str:
        return os.path.join(self.crts_dir, f"{serial}.revocation.json")

    def directories(self):
        return [self.public_dir, self.private_dir, self.crts_dir, self.csrs_dir]

    def required_files(self):
        return [self.cert_path, self.key_path, self.crtdb_path, self.crtserial_path, self.crlserial_path]
