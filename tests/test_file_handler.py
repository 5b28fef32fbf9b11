"""Tests for the encrypted file transfer after an accepted handshake."""

import os
import socket

import pytest

from secretshare.protocol.consent import PromptKind, ScriptedConsent
from secretshare.protocol.errors import (
    DecryptionFailed,
    EncryptionFailed,
    FileUnavailable,
    ProtocolViolation,
    TransferDeclined,
)
from secretshare.protocol.file_handler import (
    FileReceiver,
    FileSender,
    ReceiverState,
    SenderState,
    TransferMetadata,
)
from secretshare.protocol.line_handler import LineStream, encode_payload

from .conftest import ALICE_FPR, FakeCipher


def drained(sock):
    """Everything the other side wrote after it finished, once it hung up."""
    chunks = []
    while True:
        try:
            chunk = sock.recv(65536)
        except ConnectionResetError:
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


class TestTransfer:
    """Sender and receiver talking over a socket pair."""

    def test_file_arrives(self, sock_pair, run_in_thread, secret_file, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        cipher = FakeCipher()
        sender = FileSender(cipher, secret_file)
        consent = ScriptedConsent([True])
        inbox = tmp_path / "inbox"
        receiver = FileReceiver(cipher, consent, str(inbox))

        worker = run_in_thread(sender.send, LineStream(host_sock), ALICE_FPR)
        received = receiver.receive(LineStream(client_sock))
        metadata = worker.outcome()

        assert received.path == str(inbox / "secret.txt")
        with open(received.path, "rb") as f:
            assert f.read() == b"the eagle lands\r\n"
        assert metadata.file_name == "secret.txt"
        assert metadata.plain_size == 17
        assert received.metadata == metadata
        assert cipher.encrypted_for == [ALICE_FPR]
        assert sender.state is SenderState.DONE
        assert receiver.state is ReceiverState.DONE

    def test_operator_sees_name_and_size(self, sock_pair, run_in_thread, secret_file, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        consent = ScriptedConsent([True])
        run_in_thread(FileSender(FakeCipher(), secret_file).send, LineStream(host_sock), ALICE_FPR)
        FileReceiver(FakeCipher(), consent, str(tmp_path)).receive(LineStream(client_sock))

        prompt = consent.prompts[0]
        assert prompt.kind is PromptKind.FILE
        assert prompt.file_name == "secret.txt"
        assert prompt.file_size == 17
        assert "17 B" in prompt.message

    def test_receiver_declines(self, sock_pair, run_in_thread, secret_file, tmp_path) -> None:
        """Declining sends REJECT and no payload follows."""
        host_sock, client_sock = sock_pair
        sender = FileSender(FakeCipher(), secret_file)
        receiver = FileReceiver(FakeCipher(), ScriptedConsent([False]), str(tmp_path / "inbox"))

        worker = run_in_thread(sender.send, LineStream(host_sock), ALICE_FPR)
        with pytest.raises(TransferDeclined):
            receiver.receive(LineStream(client_sock))
        with pytest.raises(TransferDeclined):
            worker.outcome()

        host_sock.close()
        assert drained(client_sock) == b""
        assert sender.state is SenderState.DECLINED
        assert receiver.state is ReceiverState.DECLINED
        assert not (tmp_path / "inbox").exists()


class TestSender:

    def test_missing_file(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        sender = FileSender(FakeCipher(), str(tmp_path / "nope.txt"))
        with pytest.raises(FileUnavailable):
            sender.send(LineStream(host_sock), ALICE_FPR)
        assert sender.state is SenderState.FAILED
        host_sock.close()
        assert drained(client_sock) == b""

    def test_directory_is_not_a_file(self, sock_pair, tmp_path) -> None:
        host_sock, _ = sock_pair
        with pytest.raises(FileUnavailable):
            FileSender(FakeCipher(), str(tmp_path)).send(LineStream(host_sock), ALICE_FPR)

    def test_encryption_failure_sends_nothing(self, sock_pair, secret_file) -> None:
        host_sock, client_sock = sock_pair
        with pytest.raises(EncryptionFailed):
            FileSender(FakeCipher(fail_encrypt=True), secret_file).send(LineStream(host_sock), ALICE_FPR)
        host_sock.close()
        assert drained(client_sock) == b""

    def test_pipe_in_file_name(self, sock_pair, tmp_path) -> None:
        """Names the metadata line cannot carry are refused up front."""
        host_sock, _ = sock_pair
        path = tmp_path / "a|b.txt"
        path.write_bytes(b"x")
        with pytest.raises(FileUnavailable, match=r"\|"):
            FileSender(FakeCipher(), str(path)).send(LineStream(host_sock), ALICE_FPR)

    @pytest.mark.parametrize("answer", [b"REJECT\n", b"accept\n", b"YES\n"])
    def test_anything_but_accept_declines(self, sock_pair, secret_file, answer) -> None:
        host_sock, client_sock = sock_pair
        client_sock.sendall(answer)
        with pytest.raises(TransferDeclined):
            FileSender(FakeCipher(), secret_file).send(LineStream(host_sock), ALICE_FPR)

        client = LineStream(client_sock)
        assert client.read_line().startswith("secret.txt|17|")
        host_sock.close()
        assert drained(client_sock) == b""

    def test_receiver_hangs_up(self, sock_pair, secret_file) -> None:
        host_sock, client_sock = sock_pair
        client_sock.shutdown(socket.SHUT_WR)
        with pytest.raises(TransferDeclined):
            FileSender(FakeCipher(), secret_file).send(LineStream(host_sock), ALICE_FPR)

    def test_metadata_line(self, sock_pair, secret_file) -> None:
        host_sock, client_sock = sock_pair
        client_sock.sendall(b"ACCEPT\n")
        cipher = FakeCipher()
        metadata = FileSender(cipher, secret_file).send(LineStream(host_sock), ALICE_FPR)

        client = LineStream(client_sock)
        assert client.read_line() == f"secret.txt|17|{metadata.cipher_size}"
        payload = client.read_line(limit=10 * 1024 * 1024)
        assert payload == encode_payload(cipher.encrypt(secret_file, ALICE_FPR))


class TestReceiver:

    def _offer(self, sock, metadata_line, payload_line=None):
        data = metadata_line + b"\n"
        if payload_line is not None:
            data += payload_line + b"\n"
        sock.sendall(data)

    def _receiver(self, tmp_path, consent=None, **kwargs):
        return FileReceiver(FakeCipher(), consent or ScriptedConsent([True]), str(tmp_path / "inbox"), **kwargs)

    def test_two_field_metadata(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"a.txt|123")
        consent = ScriptedConsent([True])
        with pytest.raises(ProtocolViolation):
            self._receiver(tmp_path, consent).receive(LineStream(client_sock))
        assert consent.prompts == []

    def test_negative_size(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"a.txt|-1|456")
        with pytest.raises(ProtocolViolation):
            self._receiver(tmp_path).receive(LineStream(client_sock))

    def test_path_is_reduced_to_base_name(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        blob = FakeCipher.PREFIX + ALICE_FPR.encode() + b":" + b"olleh"
        self._offer(host_sock, b"../../etc/passwd|5|%d" % len(blob), encode_payload(blob).encode())

        received = self._receiver(tmp_path).receive(LineStream(client_sock))

        assert received.path == str(tmp_path / "inbox" / "passwd")
        assert (tmp_path / "inbox" / "passwd").read_bytes() == b"hello"
        assert not (tmp_path / "etc").exists()

    def test_dot_dot_name(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"..|5|10")
        with pytest.raises(ProtocolViolation):
            self._receiver(tmp_path).receive(LineStream(client_sock))

    def test_oversized_offer(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"big.iso|5000|5000")
        consent = ScriptedConsent([True])
        with pytest.raises(ProtocolViolation, match="too large"):
            self._receiver(tmp_path, consent, max_transfer_bytes=4096).receive(LineStream(client_sock))
        assert consent.prompts == []

    def test_bad_base64(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"a.txt|1|3", b"@@@@")
        with pytest.raises(ProtocolViolation):
            self._receiver(tmp_path).receive(LineStream(client_sock))

    def test_payload_size_mismatch(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"a.txt|1|6", encode_payload(b"abc").encode())
        receiver = self._receiver(tmp_path)
        with pytest.raises(ProtocolViolation, match="expected 6"):
            receiver.receive(LineStream(client_sock))
        assert receiver.state is ReceiverState.FAILED

    def test_decryption_failure(self, sock_pair, tmp_path) -> None:
        host_sock, client_sock = sock_pair
        self._offer(host_sock, b"a.txt|1|4", encode_payload(b"junk").encode())
        with pytest.raises(DecryptionFailed):
            self._receiver(tmp_path).receive(LineStream(client_sock))
        assert not os.path.exists(tmp_path / "inbox" / "a.txt")

    def test_sends_accept_before_payload(self, sock_pair, tmp_path, run_in_thread) -> None:
        host_sock, client_sock = sock_pair
        receiver = self._receiver(tmp_path)
        worker = run_in_thread(receiver.receive, LineStream(client_sock))
        blob = FakeCipher.PREFIX + b"X:" + b"!ih"
        host = LineStream(host_sock)
        host.write_line("hi.txt|3|%d" % len(blob))

        assert host.read_line() == "ACCEPT"
        host.write_line(encode_payload(blob))
        assert worker.outcome().metadata == TransferMetadata("hi.txt", 3, len(blob))
        assert (tmp_path / "inbox" / "hi.txt").read_bytes() == b"hi!"


class TestSafeName:

    @pytest.mark.parametrize("name,expected", [
        ("a.txt", "a.txt"),
        ("dir/a.txt", "a.txt"),
        ("/abs/path/a.txt", "a.txt"),
        ("..\\..\\windows\\a.txt", "a.txt"),
    ])
    def test_reduces_to_one_component(self, name, expected) -> None:
        assert TransferMetadata(name, 1, 1).safe_name() == expected

    @pytest.mark.parametrize("name", ["dir/", ".", "..", "a/..", "nul\x00.txt"])
    def test_unusable(self, name) -> None:
        with pytest.raises(ProtocolViolation):
            TransferMetadata(name, 1, 1).safe_name()
