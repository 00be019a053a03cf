"""Tokenization vault: opaque tokens mapped to encrypted originals."""

import re
from dataclasses import dataclass

from aegis_engine.crypto.primitives import random_hex
from aegis_engine.crypto.symmetric import SymmetricEngine
from aegis_engine.privacy.sanitizer import mask_value
from aegis_engine.vault.store import InMemoryTokenStore, TokenStore

TOKEN_PREFIX = "tok_"
TOKEN_BYTES = 16
TOKEN_PATTERN = re.compile(rf"^{TOKEN_PREFIX}[0-9a-f]{{{TOKEN_BYTES * 2}}}$")
_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class Token:
    token: str
    hint: str


class TokenizationVault:
    """Issue and resolve tokens.

    Token strings are pure randomness; the only disclosed information is the
    hint (last four characters).  Unknown, malformed and revoked tokens all
    resolve to None.
    """

    def __init__(self, engine: SymmetricEngine, store: TokenStore | None = None):
        self.engine = engine
        self.store = store if store is not None else InMemoryTokenStore()

    def tokenize(self, value: str) -> Token:
        envelope = self.engine.encrypt(value.encode("utf-8"))
        for _ in range(_MAX_ATTEMPTS):
            token = f"{TOKEN_PREFIX}{random_hex(TOKEN_BYTES)}"
            if self.store.put(token, envelope):
                return Token(token=token, hint=mask_value(value))
        raise RuntimeError("Could not allocate a unique token")

    def detokenize(self, token: str) -> str | None:
        """Original value, or None. A stored envelope that fails authentication raises."""
        if not isinstance(token, str) or not TOKEN_PATTERN.match(token):
            return None
        envelope = self.store.get(token)
        if envelope is None:
            return None
        return self.engine.decrypt(envelope).decode("utf-8")

    def revoke(self, token: str) -> bool:
        if not isinstance(token, str) or not TOKEN_PATTERN.match(token):
            return False
        return self.store.delete(token)

    # ── Master key rotation ──

    def count_under(self, key_id: str) -> int:
        return sum(1 for _, envelope in self.store.items() if envelope.key_id == key_id)

    def rewrap(self, old_key_id: str, new_key_id: str) -> int:
        """Re-seal every entry under ``old_key_id`` with ``new_key_id``. Returns the count.

        Tokens are unchanged; an entry revoked meanwhile is skipped.
        """
        resealed = 0
        for token, envelope in self.store.items():
            if envelope.key_id != old_key_id:
                continue
            plaintext = self.engine.decrypt(envelope)
            if self.store.replace(token, self.engine.encrypt(plaintext, key_id=new_key_id)):
                resealed += 1
        return resealed
