"""Pluggable cipher for values stored with ``is_encrypted``."""

from typing import Protocol


class ValueCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class PlaintextCipher:
    """Identity cipher used when no key management is wired in."""

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext
