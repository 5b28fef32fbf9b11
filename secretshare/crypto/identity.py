import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from secretshare.log import get_logger
from secretshare.protocol.errors import (
    IdentityUnavailable,
    ImportFailed,
    SecretShareError,
    VerificationFailed,
)

logger = get_logger(__name__)


def normalize_fingerprint(fingerprint: str) -> str:
    return "".join(fingerprint.split()).upper()


@dataclass
class Identity:
    """
    An OpenPGP identity. ``label`` is shown to humans only; every trust
    decision is keyed on ``fingerprint``.
    """
    fingerprint: str
    label: str
    public_key_armor: str = ""


class IdentityProvider(Protocol):
    """Access to the local identity and the local public keyring."""

    def default_identity(self) -> Identity:
        """Raises IdentityUnavailable when no local secret key exists."""
        ...

    def export_public_key(self, fingerprint: str) -> str:
        ...

    def import_public_key(self, armor: str) -> Tuple[str, ...]:
        """Import a remote key block; returns the primary fingerprints it carried."""
        ...

    def key_exists(self, fingerprint: str) -> bool:
        ...


def parse_colon_listing(output: str) -> List[Tuple[str, str, Optional[str]]]:
    """
    Parse ``gpg --with-colons`` key listings.

    Returns ``(record_type, fingerprint, first_uid)`` for every primary key
    (``pub`` or ``sec`` record); subkey fingerprints are skipped.
    """
    keys = []
    current = None
    awaiting_fpr = False
    for line in output.splitlines():
        fields = line.split(":")
        record = fields[0]
        if record in ("pub", "sec"):
            current = [record, None, None]
            keys.append(current)
            awaiting_fpr = True
        elif record in ("sub", "ssb"):
            awaiting_fpr = False
        elif record == "fpr" and current is not None and awaiting_fpr and len(fields) > 9:
            current[1] = fields[9]
            awaiting_fpr = False
        elif record == "uid" and current is not None and current[2] is None and len(fields) > 9:
            current[2] = fields[9]
    return [(r, fpr, uid) for r, fpr, uid in keys if fpr]


class GPGTool:
    """Runs the gpg binary as a subprocess."""

    def __init__(self, gpg_binary="gpg", gnupg_home=None):
        self.gpg_binary = gpg_binary
        self.gnupg_home = gnupg_home

    def command(self, *args):
        cmd = [self.gpg_binary, "--batch", "--no-tty"]
        if self.gnupg_home:
            cmd += ["--homedir", self.gnupg_home]
        return cmd + list(args)

    def run(self, *args, input=None, error=SecretShareError):
        """Run gpg and return the completed process; failing to start raises ``error``."""
        cmd = self.command(*args)
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, input=input, capture_output=True, check=False)
        except OSError as e:
            raise error(f"Failed to run {self.gpg_binary}: {e}") from e


def _stderr(proc):
    return proc.stderr.decode("utf-8", errors="replace").strip()


class GPGIdentityProvider(GPGTool):

    def default_identity(self) -> Identity:
        proc = self.run("--list-secret-keys", "--with-colons", error=IdentityUnavailable)
        if proc.returncode != 0:
            raise IdentityUnavailable(f"Failed to list GPG keys: {_stderr(proc)}")

        keys = [k for k in parse_colon_listing(proc.stdout.decode("utf-8", errors="replace"))
                if k[0] == "sec"]
        if not keys:
            raise IdentityUnavailable("No GPG key found")

        _, fingerprint, label = keys[0]
        label = label or fingerprint
        return Identity(
            fingerprint=fingerprint,
            label=label,
            public_key_armor=self.export_public_key(fingerprint),
        )

    def export_public_key(self, fingerprint: str) -> str:
        proc = self.run("--armor", "--export", fingerprint, error=IdentityUnavailable)
        armor = proc.stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0 or not armor.strip():
            raise IdentityUnavailable(f"Failed to export public key {fingerprint}: {_stderr(proc)}")
        return armor

    def inspect_key_block(self, armor: str) -> Tuple[str, ...]:
        """List the primary fingerprints in ``armor`` without touching the keyring."""
        proc = self.run("--with-colons", "--import-options", "show-only", "--import",
                        input=armor.encode("utf-8"), error=ImportFailed)
        if proc.returncode != 0:
            raise ImportFailed(f"Unreadable key block: {_stderr(proc)}")

        keys = parse_colon_listing(proc.stdout.decode("utf-8", errors="replace"))
        if any(record == "sec" for record, _, _ in keys):
            raise ImportFailed("Key block contains secret key material")
        if not keys:
            raise ImportFailed("Key block contains no public key")
        return tuple(normalize_fingerprint(fpr) for _, fpr, _ in keys)

    def import_public_key(self, armor: str) -> Tuple[str, ...]:
        if not armor.strip():
            raise ImportFailed("Empty public key block")

        # gpg merges same-fingerprint keys; a key with another fingerprint is never replaced
        fingerprints = self.inspect_key_block(armor)
        proc = self.run("--import", input=armor.encode("utf-8"), error=ImportFailed)
        if proc.returncode != 0:
            raise ImportFailed(f"GPG import failed: {_stderr(proc)}")
        logger.debug(f"Imported key(s): {', '.join(fingerprints)}")
        return fingerprints

    def key_exists(self, fingerprint: str) -> bool:
        wanted = normalize_fingerprint(fingerprint)
        if not wanted:
            return False
        proc = self.run("--with-colons", "--list-keys", wanted, error=VerificationFailed)
        if proc.returncode != 0:
            return False
        listing = parse_colon_listing(proc.stdout.decode("utf-8", errors="replace"))
        return any(normalize_fingerprint(fpr) == wanted for _, fpr, _ in listing)
