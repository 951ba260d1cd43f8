"""
crypto.py
---------
FHT Message Service — Secret Decryption Interface
-------------------------------------------------
The remote API stores database connection strings encrypted, and the client
credentials file stores the password encrypted.  The cipher itself belongs
to the shared FHT tooling; this module only defines the narrow interface the
service consumes and the "keep the value on failure" policy.

A decryptor returns a ``DecryptResult`` instead of an error string, so a
failed decryption is detected by type, never by sniffing message text.

Public API:
    DecryptResult       ok / value / reason triple.
    Decryptor           Protocol: ``decrypt(ciphertext) -> DecryptResult``.
    NullDecryptor       Default when no cipher is configured; always fails.
    decrypt_or_keep()   Apply a decryptor, falling back to the input.

Project: FHT Message Service
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from typing_extensions import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecryptResult:
    ok: bool
    value: str = ""
    reason: str = ""

    @classmethod
    def success(cls, value: str) -> "DecryptResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "DecryptResult":
        return cls(ok=False, reason=reason)


class Decryptor(Protocol):
    def decrypt(self, ciphertext: str) -> DecryptResult:
        ...


class NullDecryptor:
    """Decryptor used when no cipher is installed: every value stays as-is."""

    def decrypt(self, ciphertext: str) -> DecryptResult:
        return DecryptResult.failure("no decryptor configured")


def decrypt_or_keep(decryptor: Decryptor, value: Optional[str]) -> Optional[str]:
    """
    Decrypt *value*, returning it unchanged when decryption fails.

    ``None`` and ``""`` pass straight through without calling the decryptor.
    """
    if not value:
        return value
    result = decryptor.decrypt(value)
    if result.ok:
        return result.value
    logger.debug("crypto: value left unchanged (%s).", result.reason)
    return value
