"""Aegis-Engine exception hierarchy.

Messages on crypto failures may cross a trust boundary and never say
which check failed.
"""

PUBLIC_MESSAGE = "Could not process request"


class AegisError(Exception):
    """Base exception for all Aegis errors."""

    def __init__(self, message: str = "", code: str = "AEGIS_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def public_message(self) -> str:
        """Message safe to show an untrusted caller."""
        return PUBLIC_MESSAGE


class ConfigError(AegisError):
    """Raised for missing or invalid key material and configuration. Fatal at startup."""

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__(message, code="CONFIG_ERROR")


class CryptoOperationError(AegisError):
    """Raised when an encrypt, decrypt, sign or key operation fails."""

    def __init__(self, message: str = "Cryptographic operation failed", code: str = "CRYPTO_FAILED"):
        super().__init__(message, code=code)


class DecryptionError(CryptoOperationError):
    """Raised when an envelope fails authentication or cannot be decrypted."""

    def __init__(self, message: str = "Cryptographic operation failed"):
        super().__init__(message, code="DECRYPTION_FAILED")


class EnvelopeFormatError(CryptoOperationError):
    """Raised when a stored value cannot be parsed as an encrypted envelope."""

    def __init__(self, message: str = "Cryptographic operation failed"):
        super().__init__(message, code="MALFORMED_ENVELOPE")


class MalformedHashError(CryptoOperationError):
    """Raised when a stored password hash cannot be parsed."""

    def __init__(self, message: str = "Malformed password hash"):
        super().__init__(message, code="MALFORMED_HASH")


class UnsupportedMethodError(AegisError):
    """Raised when an envelope names an encryption method this engine does not implement."""

    def __init__(self, message: str = "Unsupported encryption method"):
        super().__init__(message, code="UNSUPPORTED_METHOD")


class PasswordPolicyError(AegisError):
    """Raised when a password is rejected before hashing."""

    def __init__(self, message: str = "Password does not meet length requirements"):
        super().__init__(message, code="PASSWORD_POLICY")


class ChainIntegrityError(AegisError):
    """Raised when an audit chain is found broken. Never auto-repaired."""

    def __init__(self, message: str = "Audit chain integrity check failed", broken_at: int | None = None):
        self.broken_at = broken_at
        super().__init__(message, code="CHAIN_BROKEN")


class AuditAppendError(AegisError):
    """Raised when an audit record cannot be persisted."""

    def __init__(self, message: str = "Audit record could not be persisted"):
        super().__init__(message, code="AUDIT_APPEND_FAILED")


class RotationError(AegisError):
    """Raised when a key rotation cannot start, resume or complete."""

    def __init__(self, message: str = "Key rotation failed"):
        super().__init__(message, code="ROTATION_FAILED")


class TicketNotFoundError(AegisError):
    """Raised when a rotation ticket cannot be found."""

    def __init__(self, message: str = "Rotation ticket not found"):
        super().__init__(message, code="NOT_FOUND")
