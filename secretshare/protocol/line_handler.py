import base64
import binascii
import socket

from secretshare.protocol.errors import ProtocolViolation, StreamIOError

# Wire tokens
END_PUBLIC_KEY = "<<<END_PUBLIC_KEY>>>"
HANDSHAKE_ACCEPTED = "ACCEPTED"
HANDSHAKE_REJECTED = "REJECTED"
TRANSFER_ACCEPT = "ACCEPT"
TRANSFER_REJECT = "REJECT"
METADATA_SEPARATOR = "|"

DEFAULT_LINE_LIMIT = 64 * 1024
RECV_CHUNK = 64 * 1024


class LineStream:
    """
    Newline-terminated UTF-8 text lines over a connected socket.

    Bytes received past the end of a line stay buffered for the next read,
    so back-to-back messages from the peer are never lost.
    """

    def __init__(self, sock, read_timeout=None):
        self.sock = sock
        self._buffer = bytearray()
        self._eof = False
        sock.settimeout(read_timeout)

    def write_line(self, text):
        """Send ``text`` followed by a single newline."""
        if "\n" in text:
            raise ProtocolViolation("Line payload must not contain a newline")
        self.write_raw((text + "\n").encode("utf-8"))

    def write_raw(self, data):
        try:
            self.sock.sendall(data)
        except (socket.timeout, OSError) as e:
            raise StreamIOError(f"Failed to write to stream: {e}") from e

    def read_line(self, limit=DEFAULT_LINE_LIMIT):
        """
        Read one line and return it without its line terminator.

        Raises ProtocolViolation when no newline shows up within ``limit``
        bytes or the line is not valid UTF-8, and StreamIOError when the
        stream fails or closes first.
        """
        start = 0
        while True:
            idx = self._buffer.find(b"\n", start)
            if idx != -1:
                break
            if len(self._buffer) > limit:
                raise ProtocolViolation(f"Line exceeds {limit} bytes")
            start = len(self._buffer)
            if self._eof:
                raise StreamIOError("Stream closed while receiving data.")
            self._fill()

        if idx > limit:
            raise ProtocolViolation(f"Line exceeds {limit} bytes")
        raw = bytes(self._buffer[:idx])
        del self._buffer[:idx + 1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolViolation(f"Line is not valid UTF-8: {e}") from e

    def _fill(self):
        try:
            chunk = self.sock.recv(RECV_CHUNK)
        except socket.timeout as e:
            raise StreamIOError("Timed out waiting for peer") from e
        except OSError as e:
            raise StreamIOError(f"Failed to read from stream: {e}") from e
        if not chunk:
            self._eof = True
            return
        self._buffer.extend(chunk)


def encode_payload(data):
    """Encode bytes as a single text-safe (base64) line."""
    return base64.b64encode(data).decode("ascii")


def decode_payload(text):
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolViolation(f"Payload is not valid base64: {e}") from e


def encoded_length(size):
    """Length of the base64 text for ``size`` raw bytes."""
    return 4 * ((size + 2) // 3)


def format_metadata(metadata):
    return METADATA_SEPARATOR.join(
        (metadata.file_name, str(metadata.plain_size), str(metadata.cipher_size))
    )


def parse_metadata(line):
    """
    Parse ``fileName|plainSize|cipherSize`` into TransferMetadata.

    The file name is returned as sent; callers must reduce it to a single
    path component before touching the file system.
    """
    from secretshare.protocol.file_handler import TransferMetadata

    parts = line.strip().split(METADATA_SEPARATOR)
    if len(parts) != 3:
        raise ProtocolViolation(f"Invalid metadata format: expected 3 fields, got {len(parts)}")

    file_name, plain, cipher = parts
    if not file_name:
        raise ProtocolViolation("Invalid metadata: empty file name")

    return TransferMetadata(
        file_name=file_name,
        plain_size=_parse_size("plain size", plain),
        cipher_size=_parse_size("cipher size", cipher),
    )


def _parse_size(field, value):
    # int() would also take "+5", " 5" or "1_000"
    if not value.isascii() or not value.isdigit():
        raise ProtocolViolation(f"Invalid {field}: {value!r}")
    return int(value)
