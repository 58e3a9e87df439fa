"""Key storage boundary."""

from site_monitor.core import KeyCipher


class PlaintextKeyCipher(KeyCipher):
    """Pass-through cipher for deployments where the store is already encrypted.

    Swap in a real implementation of KeyCipher to encrypt stored API keys.
    """

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext
