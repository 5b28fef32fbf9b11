import os
import stat
from dataclasses import dataclass
from enum import Enum

from secretshare.log import get_logger
from secretshare.protocol.consent import ConsentPrompt, format_file_size
from secretshare.protocol.errors import (
    DecryptionFailed,
    FileUnavailable,
    ProtocolViolation,
    SecretShareError,
    StreamIOError,
    TransferDeclined,
)
from secretshare.protocol.line_handler import (
    METADATA_SEPARATOR,
    TRANSFER_ACCEPT,
    TRANSFER_REJECT,
    decode_payload,
    encode_payload,
    encoded_length,
    format_metadata,
    parse_metadata,
)

logger = get_logger(__name__)

DEFAULT_MAX_TRANSFER_BYTES = 1024 * 1024 * 1024
MAX_RESPONSE_BYTES = 1024


@dataclass(frozen=True)
class TransferMetadata:
    file_name: str
    plain_size: int
    cipher_size: int

    def safe_name(self):
        """
        The reported file name reduced to a single path component.

        Both ``/`` and ``\\`` count as separators whatever the local OS.
        """
        name = self.file_name.replace("\\", "/").rsplit("/", 1)[-1].strip()
        if name in ("", ".", "..") or "\x00" in name:
            raise ProtocolViolation(f"Unusable file name: {self.file_name!r}")
        return name


@dataclass(frozen=True)
class ReceivedFile:
    metadata: TransferMetadata
    path: str


class SenderState(Enum):
    STAT = "stat"
    ENCRYPT = "encrypt"
    SEND_METADATA = "send_metadata"
    AWAIT_CONSENT = "await_consent"
    SEND_PAYLOAD = "send_payload"
    DONE = "done"
    DECLINED = "declined"
    FAILED = "failed"


class ReceiverState(Enum):
    AWAIT_METADATA = "await_metadata"
    PARSE = "parse"
    AWAIT_HUMAN_CONSENT = "await_human_consent"
    SEND_ACCEPT = "send_accept"
    AWAIT_PAYLOAD = "await_payload"
    DECODE = "decode"
    DECRYPT = "decrypt"
    DONE = "done"
    SEND_REJECT = "send_reject"
    DECLINED = "declined"
    FAILED = "failed"


class FileSender:
    """Offers one file to a verified peer, encrypted for its fingerprint."""

    def __init__(self, cipher, file_path):
        self.cipher = cipher
        self.file_path = file_path
        self.state = SenderState.STAT

    def send(self, stream, recipient_fingerprint):
        try:
            metadata = self._send(stream, recipient_fingerprint)
        except TransferDeclined:
            self.state = SenderState.DECLINED
            raise
        except SecretShareError:
            self.state = SenderState.FAILED
            raise
        self.state = SenderState.DONE
        return metadata

    def _send(self, stream, recipient_fingerprint):
        self.state = SenderState.STAT
        file_name, plain_size = self._stat()
        logger.info(f"Preparing to send file: {file_name} ({format_file_size(plain_size)})")

        self.state = SenderState.ENCRYPT
        logger.info("Encrypting file with client's GPG key...")
        encrypted = self.cipher.encrypt(self.file_path, recipient_fingerprint)
        logger.info(f"Encrypted file size: {format_file_size(len(encrypted))}")

        metadata = TransferMetadata(file_name, plain_size, len(encrypted))
        self.state = SenderState.SEND_METADATA
        stream.write_line(format_metadata(metadata))
        logger.debug("Sent file metadata, waiting for client response...")

        self.state = SenderState.AWAIT_CONSENT
        try:
            response = stream.read_line(limit=MAX_RESPONSE_BYTES).strip()
        except (StreamIOError, ProtocolViolation) as e:
            raise TransferDeclined(f"No answer from client: {e}") from e
        if response != TRANSFER_ACCEPT:
            logger.info("Client rejected the file transfer")
            raise TransferDeclined("Client rejected file transfer")

        logger.info("Client accepted, sending encrypted file...")
        self.state = SenderState.SEND_PAYLOAD
        stream.write_raw((encode_payload(encrypted) + "\n").encode("ascii"))
        logger.info("File sent successfully")
        return metadata

    def _stat(self):
        try:
            st = os.stat(self.file_path)
        except OSError as e:
            raise FileUnavailable(f"Failed to get file info: {e}") from e
        if not stat.S_ISREG(st.st_mode):
            raise FileUnavailable(f"Not a regular file: {self.file_path}")
        if not os.access(self.file_path, os.R_OK):
            raise FileUnavailable(f"File is not readable: {self.file_path}")

        file_name = os.path.basename(self.file_path)
        # the metadata line has no escaping
        if METADATA_SEPARATOR in file_name or "\n" in file_name or "\r" in file_name:
            raise FileUnavailable(
                f"File name {file_name!r} cannot be sent: it contains '|' or a line break"
            )
        return file_name, st.st_size


class FileReceiver:
    """Receives the offered file after asking the operator, and decrypts it into ``download_dir``."""

    def __init__(self, cipher, consent, download_dir=".",
                 max_transfer_bytes=DEFAULT_MAX_TRANSFER_BYTES):
        self.cipher = cipher
        self.consent = consent
        self.download_dir = download_dir
        self.max_transfer_bytes = max_transfer_bytes
        self.state = ReceiverState.AWAIT_METADATA

    def receive(self, stream):
        try:
            received = self._receive(stream)
        except TransferDeclined:
            self.state = ReceiverState.DECLINED
            raise
        except SecretShareError:
            self.state = ReceiverState.FAILED
            raise
        self.state = ReceiverState.DONE
        return received

    def _receive(self, stream):
        self.state = ReceiverState.AWAIT_METADATA
        line = stream.read_line()

        self.state = ReceiverState.PARSE
        metadata = parse_metadata(line)
        file_name = metadata.safe_name()
        if metadata.cipher_size > self.max_transfer_bytes:
            raise ProtocolViolation(
                f"Offered file is too large: {format_file_size(metadata.cipher_size)} encrypted"
            )

        self.state = ReceiverState.AWAIT_HUMAN_CONSENT
        if not self._ask(file_name, metadata.plain_size):
            self.state = ReceiverState.SEND_REJECT
            try:
                stream.write_line(TRANSFER_REJECT)
            except StreamIOError as e:
                logger.warning(f"Failed to send rejection: {e}")
            logger.info("File transfer rejected by user")
            raise TransferDeclined("File transfer rejected")

        self.state = ReceiverState.SEND_ACCEPT
        stream.write_line(TRANSFER_ACCEPT)
        logger.info("Receiving encrypted file...")

        self.state = ReceiverState.AWAIT_PAYLOAD
        encoded = stream.read_line(limit=encoded_length(metadata.cipher_size) + 1)

        self.state = ReceiverState.DECODE
        data = decode_payload(encoded)
        if len(data) != metadata.cipher_size:
            raise ProtocolViolation(
                f"Received {len(data)} encrypted bytes, expected {metadata.cipher_size}"
            )
        logger.info(f"Received {format_file_size(len(data))} of encrypted data, decrypting...")

        self.state = ReceiverState.DECRYPT
        try:
            os.makedirs(self.download_dir, exist_ok=True)
        except OSError as e:
            raise DecryptionFailed(f"Cannot create {self.download_dir}: {e}") from e
        output_path = os.path.join(self.download_dir, file_name)
        self.cipher.decrypt(data, output_path)

        logger.info(f"File saved successfully to: {output_path}")
        return ReceivedFile(metadata=metadata, path=output_path)

    def _ask(self, file_name, size):
        try:
            return bool(self.consent.ask(ConsentPrompt.file(file_name, size)))
        except Exception:
            logger.exception("Consent prompt failed")
            return False
