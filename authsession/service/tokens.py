from __future__ import annotations

import secrets
from typing import Protocol

from authsession.config import MIN_TOKEN_LENGTH


class TokenGenerator(Protocol):
    def random(self, length: int) -> str: ...


class SecretsTokenGenerator:
    """URL-safe random tokens from the OS CSPRNG, exactly ``length`` characters.

    Each character carries 6 bits, so the 22 character floor is 132 bits.
    """

    def random(self, length: int) -> str:
        if length < MIN_TOKEN_LENGTH:
            raise ValueError(f"token length must be at least {MIN_TOKEN_LENGTH}")
        # token_urlsafe(n) yields ceil(4n/3) characters, always >= n
        return secrets.token_urlsafe(length)[:length]
