"""
Asymmetric engine: RSA key pairs, OAEP encryption and PSS signatures.

Fixed algorithm choices (never negotiated per call):
- Key: RSA, public exponent 65537, size from settings (default 2048)
- Encryption: OAEP, MGF1(SHA-256), SHA-256, no label
- Signatures: PSS, MGF1(SHA-256), max salt length, SHA-256
- Private keys: PKCS#8 PEM encrypted with a passphrase derived from the
  master key named by ``KeyPair.key_id``

Every failure surfaces as the same generic CryptoOperationError.
"""

import logging
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from aegis_engine.common.exceptions import CryptoOperationError
from aegis_engine.keys.manager import KeyManager

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)
_PSS = padding.PSS(
    mgf=padding.MGF1(hashes.SHA256()),
    salt_length=padding.PSS.MAX_LENGTH,
)


@dataclass(frozen=True)
class KeyPair:
    public_pem: bytes
    private_pem: bytes  # encrypted PKCS#8
    key_id: str  # master key protecting private_pem


class AsymmetricEngine:
    """RSA operations with the private key always stored encrypted."""

    def __init__(self, key_manager: KeyManager, key_size: int = 2048):
        self.key_manager = key_manager
        self.key_size = key_size

    def generate_key_pair(self) -> KeyPair:
        private_key = rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT, key_size=self.key_size,
        )
        key_id = self.key_manager.current_key_id
        return KeyPair(
            public_pem=private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            ),
            private_pem=self._serialize_private(private_key, key_id),
            key_id=key_id,
        )

    # ── Confidentiality ──

    def encrypt_with_public_key(self, public_pem: bytes, plaintext: bytes) -> bytes:
        try:
            public_key = serialization.load_pem_public_key(public_pem)
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise TypeError("not an RSA public key")
            return public_key.encrypt(plaintext, _OAEP)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.warning("Public-key encryption failed")
            raise CryptoOperationError() from exc

    def decrypt_with_private_key(
        self, private_pem: bytes, ciphertext: bytes, key_id: str | None = None,
    ) -> bytes:
        private_key = self._load_private(private_pem, key_id)
        try:
            return private_key.decrypt(ciphertext, _OAEP)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.warning("Private-key decryption failed")
            raise CryptoOperationError() from exc

    # ── Integrity ──

    def sign(self, private_pem: bytes, message: bytes, key_id: str | None = None) -> bytes:
        private_key = self._load_private(private_pem, key_id)
        try:
            return private_key.sign(message, _PSS, hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CryptoOperationError() from exc

    def verify(self, public_pem: bytes, message: bytes, signature: bytes) -> bool:
        """True if the signature is valid. Malformed keys raise CryptoOperationError."""
        try:
            public_key = serialization.load_pem_public_key(public_pem)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CryptoOperationError() from exc
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise CryptoOperationError()
        try:
            public_key.verify(signature, message, _PSS, hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    # ── Key protection ──

    def rewrap_private_key(self, private_pem: bytes, old_key_id: str, new_key_id: str) -> bytes:
        """Re-encrypt a stored private key under another master key's passphrase."""
        private_key = self._load_private(private_pem, old_key_id)
        return self._serialize_private(private_key, new_key_id)

    def _serialize_private(self, private_key: rsa.RSAPrivateKey, key_id: str) -> bytes:
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(
                self.key_manager.private_key_passphrase(key_id)
            ),
        )

    def _load_private(self, private_pem: bytes, key_id: str | None) -> rsa.RSAPrivateKey:
        try:
            private_key = serialization.load_pem_private_key(
                private_pem,
                password=self.key_manager.private_key_passphrase(key_id),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.warning("Private key could not be loaded")
            raise CryptoOperationError() from exc
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CryptoOperationError()
        return private_key
