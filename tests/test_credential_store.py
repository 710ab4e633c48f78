"""Tests for the encrypted credential file."""

import base64
import json
import os
import stat

import pytest

from feedsync.exceptions import ConfigurationError, DecryptionError, NoCredentialError
from feedsync.services.credential_store import CredentialStore, EncryptedPayload, TokenCipher


def _flip_hex(value: str, index: int = 0) -> str:
    """Change one byte of a hex string."""
    raw = bytearray(bytes.fromhex(value))
    raw[index] ^= 0x01
    return raw.hex()


class TestTokenCipher:
    @pytest.mark.parametrize("plaintext", ["", "token", "ünïcødé ✓", "x" * 5000])
    def test_round_trip(self, encryption_key, plaintext):
        cipher = TokenCipher(encryption_key)
        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_fresh_iv_per_encryption(self, encryption_key):
        cipher = TokenCipher(encryption_key)
        first = cipher.encrypt("same")
        second = cipher.encrypt("same")
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_iv_and_tag_are_16_bytes(self, encryption_key):
        payload = TokenCipher(encryption_key).encrypt("abc")
        assert len(bytes.fromhex(payload.iv)) == 16
        assert len(bytes.fromhex(payload.auth_tag)) == 16

    def test_tampered_ciphertext_fails(self, encryption_key):
        cipher = TokenCipher(encryption_key)
        payload = cipher.encrypt("secret value")
        tampered = EncryptedPayload(_flip_hex(payload.ciphertext, 3), payload.iv, payload.auth_tag)
        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered)

    def test_tampered_auth_tag_fails(self, encryption_key):
        cipher = TokenCipher(encryption_key)
        payload = cipher.encrypt("secret value")
        tampered = EncryptedPayload(payload.ciphertext, payload.iv, _flip_hex(payload.auth_tag, 15))
        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered)

    def test_wrong_key_fails(self, encryption_key):
        payload = TokenCipher(encryption_key).encrypt("secret")
        other = TokenCipher(base64.b64encode(b"z" * 32).decode())
        with pytest.raises(DecryptionError):
            other.decrypt(payload)

    def test_malformed_hex_fails(self, encryption_key):
        cipher = TokenCipher(encryption_key)
        payload = cipher.encrypt("secret")
        with pytest.raises(DecryptionError):
            cipher.decrypt(EncryptedPayload("not-hex", payload.iv, payload.auth_tag))

    @pytest.mark.parametrize("key", [None, "", "not base64!!", base64.b64encode(b"short").decode()])
    def test_bad_key_is_configuration_error(self, key):
        with pytest.raises(ConfigurationError):
            TokenCipher(key)


class TestCredentialStore:
    def test_save_then_load(self, credential_store):
        credential = {"access_token": "a", "refresh_token": "r", "expires_in": 3600, "created_at": 1.0}
        credential_store.save(credential)
        assert credential_store.load() == credential

    def test_file_layout_and_mode(self, credential_store, tokens_path):
        credential_store.save({"access_token": "plain-secret"})

        data = json.loads(tokens_path.read_text())
        assert set(data) == {"encrypted", "iv", "authTag"}
        assert "plain-secret" not in tokens_path.read_text()
        assert stat.S_IMODE(os.stat(tokens_path).st_mode) == 0o600

    def test_save_twice_reuses_directory(self, credential_store):
        credential_store.save({"access_token": "one"})
        credential_store.save({"access_token": "two"})
        assert credential_store.load()["access_token"] == "two"

    def test_missing_file(self, credential_store):
        assert not credential_store.exists()
        with pytest.raises(NoCredentialError):
            credential_store.load()

    def test_missing_field_is_decryption_error(self, credential_store, tokens_path):
        tokens_path.parent.mkdir(parents=True)
        tokens_path.write_text(json.dumps({"encrypted": "00", "iv": "00"}))
        with pytest.raises(DecryptionError):
            credential_store.load()

    def test_not_json_is_decryption_error(self, credential_store, tokens_path):
        tokens_path.parent.mkdir(parents=True)
        tokens_path.write_text("garbage")
        with pytest.raises(DecryptionError):
            credential_store.load()

    def test_delete(self, credential_store):
        credential_store.save({"access_token": "a"})
        assert credential_store.delete() is True
        assert credential_store.delete() is False
        assert not credential_store.exists()

    def test_other_key_cannot_read(self, credential_store, tokens_path):
        credential_store.save({"access_token": "a"})
        other = CredentialStore(tokens_path, TokenCipher(base64.b64encode(b"q" * 32).decode()))
        with pytest.raises(DecryptionError):
            other.load()
