"""Shared fixtures: in-memory keyring and cipher, socket pairs, worker threads."""

import os
import socket
import threading

import pytest

from secretshare.config import load_config
from secretshare.crypto.identity import Identity, normalize_fingerprint
from secretshare.protocol.errors import (
    DecryptionFailed,
    EncryptionFailed,
    FileUnavailable,
    IdentityUnavailable,
    ImportFailed,
)

ALICE_FPR = "A1B2C3D4E5F60718293A4B5C6D7E8F9012345678"
MALLORY_FPR = "FFFF0000FFFF0000FFFF0000FFFF0000FFFF0000"


def fake_armor(*fingerprints):
    body = "".join(f"fpr:{fpr}\n" for fpr in fingerprints)
    return (
        "-----BEGIN PGP PUBLIC KEY BLOCK-----\n"
        "\n"
        f"{body}"
        "=abcd\n"
        "-----END PGP PUBLIC KEY BLOCK-----\n"
    )


class FakeKeyring:
    """IdentityProvider keeping keys in a dict; armor blocks name their fingerprints."""

    def __init__(self, identity=None, known=()):
        self.identity = identity
        self.keys = {normalize_fingerprint(f) for f in known}
        self.imported = []

    def default_identity(self):
        if self.identity is None:
            raise IdentityUnavailable("No GPG key found")
        return self.identity

    def export_public_key(self, fingerprint):
        return fake_armor(fingerprint)

    def import_public_key(self, armor):
        self.imported.append(armor)
        fingerprints = tuple(
            normalize_fingerprint(line[4:]) for line in armor.splitlines() if line.startswith("fpr:")
        )
        if not fingerprints:
            raise ImportFailed("Key block contains no public key")
        self.keys.update(fingerprints)
        return fingerprints

    def key_exists(self, fingerprint):
        return normalize_fingerprint(fingerprint) in self.keys


class FakeCipher:
    """Reversible stand-in for GPG: tags the data with the recipient."""

    PREFIX = b"FAKEPGP:"

    def __init__(self, fail_encrypt=False, fail_decrypt=False):
        self.fail_encrypt = fail_encrypt
        self.fail_decrypt = fail_decrypt
        self.encrypted_for = []
        self.decrypted_to = []

    def encrypt(self, source_path, recipient_fingerprint):
        try:
            with open(source_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise FileUnavailable(str(e)) from e
        if self.fail_encrypt:
            raise EncryptionFailed("GPG encryption failed: unusable public key")
        self.encrypted_for.append(recipient_fingerprint)
        return self.PREFIX + recipient_fingerprint.encode() + b":" + data[::-1]

    def decrypt(self, data, destination_path):
        if self.fail_decrypt or not data.startswith(self.PREFIX):
            raise DecryptionFailed("GPG decryption failed: no secret key")
        _, _, body = data[len(self.PREFIX):].partition(b":")
        with open(destination_path, "wb") as f:
            f.write(body[::-1])
        self.decrypted_to.append(destination_path)


class Worker(threading.Thread):
    def __init__(self, fn, *args):
        super().__init__(daemon=True)
        self._fn = fn
        self._args = args
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = self._fn(*self._args)
        except BaseException as e:
            self.error = e

    def outcome(self, timeout=10):
        self.join(timeout)
        assert not self.is_alive(), "worker did not finish"
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def alice():
    return Identity(fingerprint=ALICE_FPR, label="Alice <alice@example.org>",
                    public_key_armor=fake_armor(ALICE_FPR))


@pytest.fixture
def sock_pair():
    """(host_side, client_side) of a connected stream."""
    host_side, client_side = socket.socketpair()
    yield host_side, client_side
    for s in (host_side, client_side):
        try:
            s.close()
        except OSError:
            pass


@pytest.fixture
def run_in_thread():
    workers = []

    def start(fn, *args):
        worker = Worker(fn, *args)
        workers.append(worker)
        worker.start()
        return worker

    yield start
    for worker in workers:
        worker.join(5)


@pytest.fixture
def secret_file(tmp_path):
    src = tmp_path / "outbox"
    src.mkdir()
    path = src / "secret.txt"
    path.write_bytes(b"the eagle lands\r\n")
    assert len(path.read_bytes()) == 17
    return str(path)


@pytest.fixture
def make_config(tmp_path):
    def make(**overrides):
        lines = ["broadcast: false", f"download_dir: {os.path.join(str(tmp_path), 'inbox')}"]
        for key, value in overrides.items():
            lines.append(f"{key}: {value}")
        path = tmp_path / "config.yaml"
        path.write_text("\n".join(lines) + "\n")
        return load_config(str(path))
    return make
