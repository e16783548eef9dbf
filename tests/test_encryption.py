"""Tests for the phone encryption service."""

from cryptography.fernet import Fernet

from clinicflow.services.encryption import EncryptionService, mask_phone


def test_encrypt_decrypt_roundtrip():
    svc = EncryptionService()
    original = "+254712345678"
    encrypted = svc.encrypt(original)

    assert encrypted != original  # not stored in plaintext
    assert svc.decrypt(encrypted) == original


def test_configured_key_is_used():
    key = Fernet.generate_key()
    encrypted = EncryptionService(key).encrypt("+254700000001")
    assert EncryptionService(key.decode()).decrypt(encrypted) == "+254700000001"


def test_empty_string_passthrough():
    svc = EncryptionService()
    assert svc.encrypt("") == ""
    assert svc.decrypt("") == ""


def test_mask_phone_keeps_last_three_digits():
    assert mask_phone("+254 712 345 678") == "*********678"
    assert mask_phone("12") == "**"
