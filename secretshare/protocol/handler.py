from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from secretshare.crypto.identity import normalize_fingerprint
from secretshare.log import get_logger
from secretshare.protocol.consent import ConsentPrompt
from secretshare.protocol.errors import (
    ConsentDeclined,
    ProtocolViolation,
    SecretShareError,
    StreamIOError,
    VerificationFailed,
)
from secretshare.protocol.line_handler import (
    END_PUBLIC_KEY,
    HANDSHAKE_ACCEPTED,
    HANDSHAKE_REJECTED,
)

logger = get_logger(__name__)

MAX_FIELD_BYTES = 4096
DEFAULT_MAX_KEY_BLOCK_BYTES = 64 * 1024


class Role(Enum):
    HOST = "host"
    CLIENT = "client"


class Outcome(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class HostState(Enum):
    WAIT_LABEL = "wait_label"
    WAIT_FINGERPRINT = "wait_fingerprint"
    WAIT_KEY_BLOCK = "wait_key_block"
    IMPORTING = "importing"
    VERIFYING = "verifying"
    AWAITING_CONSENT = "awaiting_consent"
    RESPONDING = "responding"
    DONE = "done"


class ClientState(Enum):
    SEND_IDENTITY = "send_identity"
    AWAIT_VERDICT = "await_verdict"
    DONE = "done"


@dataclass
class HandshakeSession:
    """State of one handshake over one stream. Never reused."""
    role: Role
    peer_fingerprint: Optional[str] = None
    outcome: Outcome = Outcome.PENDING
    peer_label: Optional[str] = None
    state: Optional[Enum] = None
    failure: Optional[SecretShareError] = field(default=None, repr=False)

    @property
    def accepted(self):
        return self.outcome is Outcome.ACCEPTED

    def reject(self, failure):
        self.outcome = Outcome.REJECTED
        self.failure = failure
        return self


def _ask(consent, prompt):
    # A consent gate that blows up counts as a "no"
    try:
        return bool(consent.ask(prompt))
    except Exception:
        logger.exception("Consent prompt failed")
        return False


class HostHandshake:
    """
    Verifier side: reads the peer's label, fingerprint and public key,
    checks the key cryptographically, then lets the operator decide.
    """

    role = Role.HOST

    def __init__(self, identity_provider, consent, max_key_block_bytes=DEFAULT_MAX_KEY_BLOCK_BYTES):
        self.identity_provider = identity_provider
        self.consent = consent
        self.max_key_block_bytes = max_key_block_bytes

    def handshake(self, stream):
        session = HandshakeSession(role=Role.HOST)
        logger.debug("Starting handshake (host side)")

        # Failures while reading from the peer end the session silently
        try:
            session.state = HostState.WAIT_LABEL
            label = self._read_field(stream, "GPG user ID")
            session.peer_label = label

            session.state = HostState.WAIT_FINGERPRINT
            fingerprint = self._read_field(stream, "GPG fingerprint")

            session.state = HostState.WAIT_KEY_BLOCK
            public_key = self._read_key_block(stream)
        except SecretShareError as e:
            logger.error(f"Handshake aborted while reading from client: {e}")
            session.state = HostState.DONE
            return session.reject(e)

        try:
            session.state = HostState.IMPORTING
            logger.info("Importing client's GPG public key...")
            logger.debug(f"Public key length: {len(public_key)} bytes")
            imported = self.identity_provider.import_public_key(public_key)
            logger.info("Successfully imported client's public key")

            session.state = HostState.VERIFYING
            self._verify(fingerprint, imported)
            logger.info(f"Verified key {fingerprint} exists in keyring")
        except SecretShareError as e:
            logger.error(f"Rejecting client {label!r}: {e}")
            session.reject(e)
            self._respond(stream, session, False)
            return session

        session.peer_fingerprint = fingerprint

        session.state = HostState.AWAITING_CONSENT
        accepted = _ask(self.consent, ConsentPrompt.identity(label))
        if not accepted:
            session.reject(ConsentDeclined(f"Connection from {label!r} declined by operator"))

        self._respond(stream, session, accepted)
        if session.outcome is Outcome.PENDING:
            session.outcome = Outcome.ACCEPTED

        if session.accepted:
            logger.info(f"Connection accepted from: {label} (fingerprint: {fingerprint})")
        else:
            logger.info(f"Connection rejected from: {label}")
        return session

    def _read_field(self, stream, name):
        value = stream.read_line(limit=MAX_FIELD_BYTES).strip()
        if not value:
            raise ProtocolViolation(f"Client sent empty {name}")
        return value

    def _read_key_block(self, stream):
        lines = []
        total = 0
        while True:
            line = stream.read_line(limit=self.max_key_block_bytes)
            if END_PUBLIC_KEY in line:
                head = line.split(END_PUBLIC_KEY, 1)[0]
                if head.strip():
                    lines.append(head)
                break
            total += len(line) + 1
            if total > self.max_key_block_bytes:
                raise ProtocolViolation(
                    f"Public key block exceeds {self.max_key_block_bytes} bytes"
                )
            lines.append(line)
        if not lines:
            raise ProtocolViolation("Client sent an empty public key block")
        return "\n".join(lines) + "\n"

    def _verify(self, fingerprint, imported: Tuple[str, ...]):
        claimed = normalize_fingerprint(fingerprint)
        if claimed not in {normalize_fingerprint(f) for f in imported}:
            raise VerificationFailed(
                f"Supplied key block does not carry the claimed fingerprint {fingerprint}"
            )
        if not self.identity_provider.key_exists(fingerprint):
            raise VerificationFailed(
                f"Key import reported success but key {fingerprint} not found in keyring"
            )

    def _respond(self, stream, session, accepted):
        session.state = HostState.RESPONDING
        try:
            stream.write_line(HANDSHAKE_ACCEPTED if accepted else HANDSHAKE_REJECTED)
        except StreamIOError as e:
            logger.error(f"Failed to send response to client: {e}")
            if session.failure is None:
                session.reject(e)
        session.state = HostState.DONE


class ClientHandshake:
    """Initiator side: presents the local identity and waits for the verdict."""

    role = Role.CLIENT

    def __init__(self, identity_provider):
        self.identity_provider = identity_provider

    def handshake(self, stream):
        session = HandshakeSession(role=Role.CLIENT, state=ClientState.SEND_IDENTITY)
        logger.debug("Starting handshake (client side)")

        try:
            identity = self.identity_provider.default_identity()
            logger.info(f"Using GPG identity: {identity.label} (fingerprint: {identity.fingerprint})")

            stream.write_line(identity.label)
            stream.write_line(identity.fingerprint)
            armor = identity.public_key_armor
            if not armor.endswith("\n"):
                armor += "\n"
            stream.write_raw((armor + END_PUBLIC_KEY + "\n").encode("utf-8"))

            session.state = ClientState.AWAIT_VERDICT
            response = stream.read_line(limit=MAX_FIELD_BYTES).strip()
        except SecretShareError as e:
            logger.error(f"Handshake failed: {e}")
            session.state = ClientState.DONE
            return session.reject(e)

        session.state = ClientState.DONE
        if response == HANDSHAKE_ACCEPTED:
            logger.info("Connection accepted by host")
            session.outcome = Outcome.ACCEPTED
        else:
            logger.warning(f"Connection rejected by host: {response}")
            session.reject(ConsentDeclined(f"Connection rejected by host: {response}"))
        return session


def make_handshake(role, identity_provider, consent=None, **options):
    """Build the handshake state machine for ``role``."""
    if role is Role.HOST:
        if consent is None:
            raise ValueError("The host handshake needs a consent gate")
        return HostHandshake(identity_provider, consent, **options)
    if role is Role.CLIENT:
        return ClientHandshake(identity_provider)
    raise ValueError(f"Unknown handshake role: {role!r}")
