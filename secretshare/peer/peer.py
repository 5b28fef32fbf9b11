import socket
import struct
import threading

from secretshare.log import get_logger
from secretshare.peer.broadcast import Broadcast, local_ip
from secretshare.protocol.errors import (
    HandshakeRejected,
    SecretShareError,
    StreamIOError,
    TransferDeclined,
)
from secretshare.protocol.file_handler import FileReceiver, FileSender
from secretshare.protocol.handler import Role, make_handshake
from secretshare.protocol.line_handler import LineStream

logger = get_logger(__name__)

ACCEPT_POLL_INTERVAL = 0.5


def reset_connection(conn):
    """Abort the stream: close with SO_LINGER 0 so the peer sees a reset."""
    try:
        conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    except OSError as e:
        logger.debug(f"SO_LINGER not supported on this stream: {e}")
    conn.close()


def close_connection(conn):
    try:
        conn.shutdown(socket.SHUT_WR)
    except OSError as e:
        logger.debug(f"Shutdown failed: {e}")
    conn.close()


class Peer:
    """
    One side of a secretshare session.

    As host it listens and runs handshake + transfer on a worker thread per
    incoming stream; as client it connects once and fetches the file.
    """

    def __init__(self, config, identity_provider, cipher, consent):
        self.identity_provider = identity_provider
        self.cipher = cipher
        self.consent = consent
        self.peer_name = config["peer_name"]
        self.port = config["listen_port"]
        self.download_dir = config["download_dir"]
        self.broadcast_enabled = config["broadcast"]
        self.max_key_block_bytes = config["max_key_block_bytes"]
        self.max_transfer_bytes = config["max_transfer_bytes"]
        self.read_timeout = config["read_timeout"]

        self.file_path = None
        self.listener = None
        self.broadcast = None
        self.address = None
        self._stopping = threading.Event()
        self._accept_thread = None
        logger.debug(f"Peer '{self.peer_name}' initialized")

    # host

    def start_service(self, file_path):
        """Start listening for streams offering ``file_path``; returns the (ip, port) to share."""
        self.file_path = file_path
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(('', self.port))
        sock.listen()
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self.listener = sock

        port = sock.getsockname()[1]
        self.address = (local_ip(), port)
        logger.info(f"Share this address: {self.address[0]}:{port}")

        if self.broadcast_enabled:
            self.broadcast = Broadcast(self.peer_name, port)
            self.broadcast.start_service(self.address[0])

        self._accept_thread = threading.Thread(target=self.listen_for_streams, daemon=True)
        self._accept_thread.start()
        logger.info("Waiting for incoming connection...")
        return self.address

    def listen_for_streams(self):
        while not self._stopping.is_set():
            try:
                conn, addr = self.listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._stopping.is_set():
                    logger.error(f"Listener failed: {e}")
                break
            logger.info(f"Got a new stream from {addr}")
            threading.Thread(target=self._worker, args=(conn, addr), daemon=True).start()

    def _worker(self, conn, addr):
        try:
            self.handle_stream(conn, addr)
        except Exception:
            logger.exception(f"Unexpected error handling stream from {addr}")
            reset_connection(conn)

    def handle_stream(self, conn, addr):
        """
        Serve one stream: handshake, then transfer if the client was accepted.

        Returns True when the file was delivered. Any other outcome resets the stream.
        """
        stream = LineStream(conn, read_timeout=self.read_timeout)
        handshaker = make_handshake(Role.HOST, self.identity_provider, self.consent,
                                    max_key_block_bytes=self.max_key_block_bytes)
        session = handshaker.handshake(stream)
        if not session.accepted:
            logger.warning(f"Handshake failed with peer {addr}, rejecting connection: {session.failure}")
            reset_connection(conn)
            return False

        logger.info(f"Handshake successful with peer {addr}, connection accepted")
        sender = FileSender(self.cipher, self.file_path)
        try:
            sender.send(stream, session.peer_fingerprint)
        except TransferDeclined as e:
            logger.warning(f"Transfer to {addr} declined: {e}")
            reset_connection(conn)
            return False
        except SecretShareError as e:
            logger.error(f"Error sending file to {addr}: {e}")
            reset_connection(conn)
            return False

        logger.info("File transfer completed successfully")
        close_connection(conn)
        return True

    def wait(self, timeout=None):
        return self._stopping.wait(timeout)

    def shutdown(self):
        self._stopping.set()
        if self.broadcast is not None:
            self.broadcast.stop_service()
            self.broadcast = None
        if self._accept_thread is not None:
            self._accept_thread.join()
            self._accept_thread = None
        if self.listener is not None:
            self.listener.close()
            self.listener = None

    # client

    def fetch(self, address):
        """Connect to a hosting peer, run the handshake and receive its file."""
        ip, port = address
        try:
            sock = socket.create_connection((ip, port))
        except OSError as e:
            raise StreamIOError(f"Could not connect to {ip}:{port}: {e}") from e
        logger.info(f"Established connection to {ip}:{port}")

        try:
            received = self.receive_over(sock)
        except SecretShareError:
            reset_connection(sock)
            raise
        sock.close()
        return received

    def receive_over(self, sock):
        stream = LineStream(sock, read_timeout=self.read_timeout)
        session = make_handshake(Role.CLIENT, self.identity_provider).handshake(stream)
        if not session.accepted:
            logger.error("Handshake failed, closing connection")
            raise HandshakeRejected(f"Handshake failed: {session.failure}", session)

        receiver = FileReceiver(self.cipher, self.consent, self.download_dir,
                                max_transfer_bytes=self.max_transfer_bytes)
        return receiver.receive(stream)
