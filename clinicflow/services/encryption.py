"""
Application-layer encryption for patient contact data.

The phone number an OTP is dispatched to is kept on the challenge row so
the send can be audited; it is stored as Fernet ciphertext, never in clear.
"""

from cryptography.fernet import Fernet

from clinicflow.config import settings


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI fields."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: ciphertext will not survive a restart
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()


def mask_phone(phone: str) -> str:
    """Keep only the last three digits, for log lines and API messages."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) <= 3:
        return "*" * len(digits)
    return "*" * (len(digits) - 3) + digits[-3:]


encryption = EncryptionService()
