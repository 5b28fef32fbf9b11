import os
import tempfile
from typing import Protocol

from secretshare.crypto.identity import GPGTool
from secretshare.log import get_logger
from secretshare.protocol.errors import DecryptionFailed, EncryptionFailed, FileUnavailable

logger = get_logger(__name__)


class Cipher(Protocol):
    def encrypt(self, source_path: str, recipient_fingerprint: str) -> bytes:
        ...

    def decrypt(self, data: bytes, destination_path: str) -> None:
        ...


def write_private_file(path, data):
    """
    Write ``data`` to ``path`` with mode 0600, durably.

    The bytes go to a temporary file in the same directory which is fsynced
    and then renamed over ``path``.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".secretshare-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class GPGCipher(GPGTool):
    """Encrypts to a recipient fingerprint and decrypts with the local secret key."""

    def encrypt(self, source_path: str, recipient_fingerprint: str) -> bytes:
        try:
            with open(source_path, "rb") as f:
                file_data = f.read()
        except OSError as e:
            raise FileUnavailable(f"Failed to read file: {e}") from e

        # recipient already verified by the handshake
        proc = self.run("--encrypt", "--recipient", recipient_fingerprint,
                        "--trust-model", "always", "--armor",
                        input=file_data, error=EncryptionFailed)
        if proc.returncode != 0 or not proc.stdout:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise EncryptionFailed(f"GPG encryption failed: {stderr}")
        return proc.stdout

    def decrypt(self, data: bytes, destination_path: str) -> None:
        proc = self.run("--yes", "--decrypt", input=data, error=DecryptionFailed)
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise DecryptionFailed(f"GPG decryption failed: {stderr}")

        try:
            write_private_file(destination_path, proc.stdout)
        except OSError as e:
            raise DecryptionFailed(f"Failed to write decrypted file: {e}") from e
        logger.debug(f"Wrote {len(proc.stdout)} bytes to {destination_path}")
