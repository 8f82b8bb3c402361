"""Credential vault and input sanitization.

Secrets (bot tokens, API keys) are encrypted at rest with AES-256-GCM under a
key derived with scrypt from a stable machine fingerprint and a random salt.
The salt is generated once per installation at ``<data_dir>/encryption.salt``
with owner-only permissions and reused forever after.

Stored values use the ``iv:authTag:ciphertext`` format (all base64). Values
that do not have this shape are legacy plaintext; the Store re-encrypts them
the first time they are read (see ``Db.get_bot_token``).
"""

from __future__ import annotations

import base64
import binascii
import getpass
import os
import platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from threadbridge.constants import APP_IDENTIFIER
from threadbridge.core.errors import DecryptionError, EncryptionError

logger = structlog.get_logger(__name__)

IV_LENGTH = 12  # GCM recommended IV length
TAG_LENGTH = 16
SALT_LENGTH = 32
KEY_LENGTH = 32  # AES-256
SALT_FILENAME = "encryption.salt"

# scrypt cost parameters
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1

_BASE64_SEGMENT = re.compile(r"^[A-Za-z0-9+/]+=*$")


@dataclass(frozen=True)
class EncryptedData:
    """Base64-encoded AES-GCM fields."""

    iv: str
    auth_tag: str
    ciphertext: str


def machine_fingerprint() -> str:
    """Stable machine-specific input for key derivation."""
    return ":".join([platform.system().lower(), str(Path.home()), getpass.getuser(), APP_IDENTIFIER])


def encrypt(plaintext: str, key: bytes) -> EncryptedData:
    """Encrypt plaintext with AES-256-GCM and a fresh random IV.

    Raises:
        EncryptionError: On underlying cryptographic failure (e.g. bad key size)
    """
    iv = os.urandom(IV_LENGTH)
    try:
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    except (ValueError, TypeError) as e:
        raise EncryptionError(str(e)) from e

    # AESGCM appends the tag to the ciphertext
    ciphertext, auth_tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return EncryptedData(
        iv=base64.b64encode(iv).decode("ascii"),
        auth_tag=base64.b64encode(auth_tag).decode("ascii"),
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
    )


def decrypt(data: EncryptedData, key: bytes) -> str:
    """Decrypt AES-256-GCM data.

    Raises:
        DecryptionError: Wrong key, tampered or malformed fields
    """
    try:
        iv = base64.b64decode(data.iv, validate=True)
        auth_tag = base64.b64decode(data.auth_tag, validate=True)
        ciphertext = base64.b64decode(data.ciphertext, validate=True)
        if len(auth_tag) != TAG_LENGTH:
            raise DecryptionError(f"auth tag must be {TAG_LENGTH} bytes, got {len(auth_tag)}")
        plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
        return plaintext.decode("utf-8")
    except DecryptionError:
        raise
    except InvalidTag as e:
        raise DecryptionError("authentication tag mismatch") from e
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError(str(e) or type(e).__name__) from e


def serialize_encrypted(data: EncryptedData) -> str:
    """Serialize encrypted data for storage as iv:authTag:ciphertext."""
    return f"{data.iv}:{data.auth_tag}:{data.ciphertext}"


def deserialize_encrypted(serialized: str) -> Optional[EncryptedData]:
    """Parse iv:authTag:ciphertext; None if the shape is wrong."""
    parts = serialized.split(":")
    if len(parts) != 3 or not all(parts):
        return None
    iv, auth_tag, ciphertext = parts
    return EncryptedData(iv=iv, auth_tag=auth_tag, ciphertext=ciphertext)


def is_encrypted(value: Optional[str]) -> bool:
    """Whether a stored value has the serialized ciphertext shape (three base64 segments)."""
    if not value or ":" not in value:
        return False
    parts = value.split(":")
    if len(parts) != 3:
        return False
    return all(_BASE64_SEGMENT.match(part) for part in parts)


class CredentialVault:
    """Seals and opens secrets with a machine-derived key.

    The derived key is cached on the instance after first use and never
    changes for the lifetime of the vault.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self._key: Optional[bytes] = None

    @property
    def salt_path(self) -> Path:
        return self.data_dir / SALT_FILENAME

    def _get_or_create_salt(self) -> bytes:
        if self.salt_path.exists():
            return self.salt_path.read_bytes()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        salt = os.urandom(SALT_LENGTH)
        try:
            fd = os.open(self.salt_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            # Lost a creation race; the winner's salt is authoritative
            return self.salt_path.read_bytes()
        with os.fdopen(fd, "wb") as f:
            f.write(salt)
        logger.info("Generated encryption salt at %s", self.salt_path)
        return salt

    def derive_key(self) -> bytes:
        """Return the encryption key, deriving and caching it on first call."""
        if self._key is not None:
            return self._key

        kdf = Scrypt(salt=self._get_or_create_salt(), length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        self._key = kdf.derive(machine_fingerprint().encode("utf-8"))
        return self._key

    def clear_key_cache(self) -> None:
        """Forget the cached key (next use re-derives it from the salt file)."""
        self._key = None

    def seal(self, plaintext: str) -> str:
        """Encrypt and serialize a secret for storage."""
        return serialize_encrypted(encrypt(plaintext, self.derive_key()))

    def open_sealed(self, serialized: str) -> Optional[str]:
        """Deserialize and decrypt a stored secret.

        Decryption failures are logged (without the value) and reported as
        None: a missing secret is a configuration gap, not a crash.
        """
        data = deserialize_encrypted(serialized)
        if data is None:
            logger.warning("Stored secret has invalid format; treating as absent")
            return None
        try:
            return decrypt(data, self.derive_key())
        except DecryptionError as e:
            logger.warning("Failed to decrypt stored secret: %s", e.reason)
            return None


def sanitize_for_xml(text: str) -> str:
    """Escape text for XML/HTML contexts."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def sanitize_for_markdown(text: str) -> str:
    """Escape chat markdown control characters to prevent formatting injection."""
    return re.sub(r"([*_~`|\\])", r"\\\1", text)
