"""
Encrypted-at-rest storage for the OAuth credential.

The credential is serialized to JSON, sealed with AES-256-GCM and written
as {"encrypted", "iv", "authTag"} (hex strings) to a file that only the
owner can read. The plaintext never touches disk.
"""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from feedsync.exceptions import ConfigurationError, DecryptionError, NoCredentialError

logger = logging.getLogger(__name__)

IV_BYTES = 16
TAG_BYTES = 16
FILE_MODE = 0o600


@dataclass(frozen=True)
class EncryptedPayload:
    """Sealed credential as stored on disk."""
    ciphertext: str
    iv: str
    auth_tag: str

    def to_dict(self) -> dict:
        return {"encrypted": self.ciphertext, "iv": self.iv, "authTag": self.auth_tag}

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedPayload":
        try:
            return cls(
                ciphertext=data["encrypted"],
                iv=data["iv"],
                auth_tag=data["authTag"],
            )
        except (KeyError, TypeError) as e:
            raise DecryptionError(f"Credential file is missing field {e}") from e


class TokenCipher:
    """AES-256-GCM with a base64-encoded 32-byte key."""

    def __init__(self, key: str | None):
        if not key:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not set")
        try:
            raw_key = base64.b64decode(key, validate=True)
        except binascii.Error as e:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not valid base64") from e
        if len(raw_key) != 32:
            raise ConfigurationError(
                f"TOKEN_ENCRYPTION_KEY must decode to 32 bytes, got {len(raw_key)}"
            )
        self._aesgcm = AESGCM(raw_key)

    def encrypt(self, plaintext: str) -> EncryptedPayload:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedPayload(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            auth_tag=tag.hex(),
        )

    def decrypt(self, payload: EncryptedPayload) -> str:
        try:
            ciphertext = bytes.fromhex(payload.ciphertext)
            iv = bytes.fromhex(payload.iv)
            tag = bytes.fromhex(payload.auth_tag)
        except (ValueError, TypeError) as e:
            raise DecryptionError("Credential payload is not valid hex") from e

        if len(tag) != TAG_BYTES or not iv:
            raise DecryptionError("Credential payload has a malformed iv or auth tag")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Credential failed authentication (tampered or wrong key)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted credential is not UTF-8") from e


class CredentialStore:
    """Reads and writes the sealed credential file."""

    def __init__(self, path: str | os.PathLike, cipher: TokenCipher):
        self.path = Path(path)
        self.cipher = cipher

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict:
        """
        Read and decrypt the stored credential.

        Raises:
            NoCredentialError: no file on disk
            DecryptionError: file unreadable, tampered, or sealed with another key
        """
        if not self.path.exists():
            raise NoCredentialError(
                f"No credential at {self.path}. Run the authorization flow first."
            )

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise DecryptionError(f"Credential file {self.path} is not valid JSON") from e

        plaintext = self.cipher.decrypt(EncryptedPayload.from_dict(data))
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError("Decrypted credential is not valid JSON") from e

    def save(self, credential: dict) -> None:
        """Encrypt and write the credential with owner-only permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        payload = self.cipher.encrypt(json.dumps(credential))

        # Create with 0600 up front so the file is never world-readable
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload.to_dict(), f, indent=2)
        os.chmod(self.path, FILE_MODE)

        logger.info("Saved encrypted credential to %s", self.path)

    def delete(self) -> bool:
        if self.path.exists():
            self.path.unlink()
            return True
        return False
