"""Custom exceptions shared by the handshake and transfer protocols."""


class SecretShareError(Exception):
    pass


class ConfigError(SecretShareError):
    pass


class IdentityUnavailable(SecretShareError):
    """No usable local identity (no secret key, or its public key could not be exported)."""


class ProtocolViolation(SecretShareError):
    """Malformed or unexpected data on the wire."""


class ImportFailed(SecretShareError):
    pass


class VerificationFailed(SecretShareError):
    """The claimed fingerprint is not backed by the key block the peer supplied."""


class ConsentDeclined(SecretShareError):
    """The local operator said no to the remote identity."""


class FileUnavailable(SecretShareError):
    pass


class EncryptionFailed(SecretShareError):
    pass


class DecryptionFailed(SecretShareError):
    pass


class TransferDeclined(SecretShareError):
    """The receiving side did not want the file."""


class StreamIOError(SecretShareError):
    """The underlying byte stream failed, closed or timed out."""


class HandshakeRejected(SecretShareError):
    """The handshake on this stream ended rejected; ``session`` says why."""

    def __init__(self, message, session=None):
        super().__init__(message)
        self.session = session
