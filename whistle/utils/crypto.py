"""
Authenticated encryption for report fields and attached media.

Field cipher:
  ``encrypt_value`` / ``decrypt_value`` wrap an AEAD (AES-256-GCM by default,
  ChaCha20-Poly1305 optionally) and return an ``EncryptedValue`` envelope:
  ciphertext, 96-bit random nonce, 128-bit tag, algorithm id.  A tampered
  envelope fails authentication and raises DecryptionError.

  Encryption fails closed: any problem raises EncryptionError.  There is no
  code path that hands back the plaintext instead.

Blob cipher:
  Same contract for byte buffers, plus chunked encrypt/decrypt for AES-GCM.

Keys:
  One 32-byte key per process, derived with PBKDF2-HMAC-SHA256 from a master
  secret and a salt.  Both are configured by *source* (``env:NAME`` or
  ``file:/path``), never as literal values:

    ENCRYPTION_MASTER_KEY_SOURCE=env:WHISTLE_MASTER_KEY
    ENCRYPTION_KDF_SALT_SOURCE=file:/run/secrets/kdf_salt
"""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from whistle.core.exceptions import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
MIN_SECRET_BYTES = 16
MIN_SALT_BYTES = 8
DEFAULT_MAX_BLOB_BYTES = 200 * 1024 * 1024

DEFAULT_ALGORITHM = "AES-256-GCM"
_AEADS = {
    "AES-256-GCM": AESGCM,
    "CHACHA20-POLY1305": ChaCha20Poly1305,
}
SUPPORTED_ALGORITHMS = tuple(_AEADS)

UNDECRYPTABLE_PLACEHOLDER = "[unable to decrypt this field]"

# Report fields that never reach storage as plaintext
SENSITIVE_FIELDS = ("message", "location", "reporter_contact", "admin_notes")
# Structured fields, JSON-encoded before encryption
JSON_FIELDS = ("location",)


# ── Envelope ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EncryptedValue:
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes
    algorithm_id: str

    def to_dict(self) -> dict:
        """Serialise to base64 strings (JSON-safe)."""
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "auth_tag": base64.b64encode(self.auth_tag).decode("ascii"),
            "algorithm_id": self.algorithm_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedValue":
        try:
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                nonce=base64.b64decode(data["nonce"], validate=True),
                auth_tag=base64.b64decode(data["auth_tag"], validate=True),
                algorithm_id=str(data["algorithm_id"]),
            )
        except (KeyError, TypeError, binascii.Error) as exc:
            raise DecryptionError(f"Malformed encrypted value: {type(exc).__name__}") from exc


# ── Key material ─────────────────────────────────────────────────────────────


def resolve_secret(source: str | None, *, what: str = "secret") -> bytes:
    """Read a secret from ``env:NAME`` or ``file:/path``.

    Raises EncryptionError if the source is missing, is a literal value, or
    points at nothing.
    """
    if not source:
        raise EncryptionError(f"No source configured for {what}")

    kind, _, ref = source.partition(":")
    if kind == "env" and ref:
        value = os.getenv(ref)
        if not value:
            raise EncryptionError(f"{what} environment variable {ref} is not set")
        return value.encode("utf-8")
    if kind == "file" and ref:
        try:
            with open(ref, "rb") as fh:
                value = fh.read().rstrip(b"\r\n")
        except OSError as exc:
            raise EncryptionError(f"{what} file {ref} cannot be read: {exc.strerror}") from exc
        if not value:
            raise EncryptionError(f"{what} file {ref} is empty")
        return value

    # Anything else would be a secret pasted straight into configuration
    raise EncryptionError(f"{what} source must be 'env:NAME' or 'file:/path'")


def derive_key(master_secret: bytes, salt: bytes, iterations: int) -> bytes:
    """Derive the 32-byte data key with PBKDF2-HMAC-SHA256."""
    if len(master_secret) < MIN_SECRET_BYTES:
        raise EncryptionError(f"Master secret must be at least {MIN_SECRET_BYTES} bytes")
    if len(salt) < MIN_SALT_BYTES:
        raise EncryptionError(f"KDF salt must be at least {MIN_SALT_BYTES} bytes")
    if iterations < 1:
        raise EncryptionError("KDF iterations must be positive")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_secret)


def _check_key(key: bytes, algorithm_id: str) -> None:
    if algorithm_id not in _AEADS:
        raise EncryptionError(f"Unsupported algorithm: {algorithm_id}")
    if not isinstance(key, bytes) or len(key) != KEY_BYTES:
        raise EncryptionError(f"Key must be {KEY_BYTES} bytes")


# ── Value encryption ─────────────────────────────────────────────────────────


def encrypt_value(plaintext: str, key: bytes, algorithm_id: str = DEFAULT_ALGORITHM) -> EncryptedValue:
    """Encrypt one string under a fresh random nonce.

    Raises:
        EncryptionError: bad key, unsupported algorithm, non-string input,
            or any failure inside the cipher.
    """
    if not isinstance(plaintext, str):
        raise EncryptionError(f"Only strings can be encrypted, got {type(plaintext).__name__}")
    _check_key(key, algorithm_id)
    try:
        aead = _AEADS[algorithm_id](key)
        nonce = os.urandom(NONCE_BYTES)
        sealed = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
    except (ValueError, TypeError, OverflowError) as exc:
        raise EncryptionError(f"Encryption failed: {type(exc).__name__}") from exc
    return EncryptedValue(
        ciphertext=sealed[:-TAG_BYTES],
        nonce=nonce,
        auth_tag=sealed[-TAG_BYTES:],
        algorithm_id=algorithm_id,
    )


def decrypt_value(value: EncryptedValue, key: bytes) -> str:
    """Authenticate and decrypt an envelope.

    Raises:
        DecryptionError: tag mismatch, wrong key, unknown algorithm, or a
            malformed envelope.
    """
    aead_cls = _AEADS.get(value.algorithm_id)
    if aead_cls is None:
        raise DecryptionError(f"Unknown algorithm: {value.algorithm_id}")
    if len(value.nonce) != NONCE_BYTES or len(value.auth_tag) != TAG_BYTES:
        raise DecryptionError("Malformed envelope")
    try:
        plain = aead_cls(key).decrypt(value.nonce, value.ciphertext + value.auth_tag, None)
        return plain.decode("utf-8")
    except InvalidTag as exc:
        raise DecryptionError("Authentication failed") from exc
    except (ValueError, TypeError, UnicodeDecodeError) as exc:
        raise DecryptionError(f"Decryption failed: {type(exc).__name__}") from exc


# ── Field cipher ─────────────────────────────────────────────────────────────


class FieldCipher:
    """Process-wide field cipher bound to the derived key."""

    def __init__(self, key: bytes, algorithm_id: str = DEFAULT_ALGORITHM,
                 max_blob_bytes: int = DEFAULT_MAX_BLOB_BYTES):
        _check_key(key, algorithm_id)
        self._key = key
        self.algorithm_id = algorithm_id
        self.max_blob_bytes = max_blob_bytes

    @classmethod
    def from_config(cls, config) -> "FieldCipher":
        """Resolve secrets and derive the key; called once at app startup."""
        algorithm_id = config.get("ENCRYPTION_ALGORITHM", DEFAULT_ALGORITHM)
        if algorithm_id not in _AEADS:
            raise EncryptionError(
                f"ENCRYPTION_ALGORITHM must be one of {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        master = resolve_secret(config.get("ENCRYPTION_MASTER_KEY_SOURCE"), what="Master key")
        salt = resolve_secret(config.get("ENCRYPTION_KDF_SALT_SOURCE"), what="KDF salt")
        key = derive_key(master, salt, int(config.get("ENCRYPTION_KDF_ITERATIONS", 600000)))
        logger.info("Field cipher ready: algorithm=%s", algorithm_id)
        return cls(
            key,
            algorithm_id,
            max_blob_bytes=int(config.get("MAX_UPLOAD_BYTES", DEFAULT_MAX_BLOB_BYTES)),
        )

    def encrypt(self, plaintext: str) -> EncryptedValue:
        return encrypt_value(plaintext, self._key, self.algorithm_id)

    def decrypt(self, value: EncryptedValue) -> str:
        return decrypt_value(value, self._key)

    def decrypt_or_placeholder(self, value: EncryptedValue, *, short_id: str | None = None,
                               field_name: str | None = None) -> str:
        """Decrypt, or log the failure and return ``UNDECRYPTABLE_PLACEHOLDER``."""
        try:
            return self.decrypt(value)
        except DecryptionError as exc:
            logger.warning(
                "Undecryptable field %s: %s", field_name or "?", exc,
                extra={"short_id": short_id},
            )
            return UNDECRYPTABLE_PLACEHOLDER

    def encrypt_fields(self, mapping: dict, field_names: Iterable[str] = SENSITIVE_FIELDS) -> dict:
        """Encrypt the sensitive entries of ``mapping``; ``None`` values are skipped.

        Returns ``{field_name: EncryptedValue}``.  Raises EncryptionError on
        the first failure so the caller persists nothing.
        """
        out = {}
        for name in field_names:
            raw = mapping.get(name)
            if raw is None:
                continue
            if isinstance(raw, (dict, list)):
                raw = json.dumps(raw, sort_keys=True)
            out[name] = self.encrypt(raw)
        return out

    def decrypt_fields(self, values: dict, *, short_id: str | None = None) -> dict:
        """Inverse of ``encrypt_fields`` with placeholders for failures."""
        out = {}
        for name, value in values.items():
            text = self.decrypt_or_placeholder(value, short_id=short_id, field_name=name)
            if name in JSON_FIELDS and text != UNDECRYPTABLE_PLACEHOLDER:
                try:
                    text = json.loads(text)
                except ValueError:
                    pass  # stored as a plain string
            out[name] = text
        return out

    def blob_cipher(self) -> "BlobCipher":
        return BlobCipher(self._key, self.algorithm_id, max_bytes=self.max_blob_bytes)


# ── Blob cipher ──────────────────────────────────────────────────────────────


class BlobCipher:
    """AEAD for byte buffers (attachments)."""

    def __init__(self, key: bytes, algorithm_id: str = DEFAULT_ALGORITHM,
                 max_bytes: int = DEFAULT_MAX_BLOB_BYTES):
        _check_key(key, algorithm_id)
        self._key = key
        self.algorithm_id = algorithm_id
        self.max_bytes = max_bytes

    def _check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise EncryptionError(f"Blob of {size} bytes exceeds limit of {self.max_bytes}")

    def encrypt(self, data: bytes) -> tuple[bytes, bytes, bytes]:
        """Return ``(encrypted, nonce, auth_tag)``."""
        if not isinstance(data, (bytes, bytearray)):
            raise EncryptionError(f"Only bytes can be encrypted, got {type(data).__name__}")
        self._check_size(len(data))
        try:
            nonce = os.urandom(NONCE_BYTES)
            sealed = _AEADS[self.algorithm_id](self._key).encrypt(nonce, bytes(data), None)
        except (ValueError, TypeError, OverflowError) as exc:
            raise EncryptionError(f"Blob encryption failed: {type(exc).__name__}") from exc
        return sealed[:-TAG_BYTES], nonce, sealed[-TAG_BYTES:]

    def decrypt(self, encrypted: bytes, nonce: bytes, auth_tag: bytes) -> bytes:
        if len(nonce) != NONCE_BYTES or len(auth_tag) != TAG_BYTES:
            raise DecryptionError("Malformed blob envelope")
        try:
            return _AEADS[self.algorithm_id](self._key).decrypt(nonce, encrypted + auth_tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Blob authentication failed") from exc
        except (ValueError, TypeError) as exc:
            raise DecryptionError(f"Blob decryption failed: {type(exc).__name__}") from exc

    def encrypt_stream(self, chunks: Iterable[bytes]) -> "EncryptStream":
        """Encrypt chunk by chunk; ``nonce`` / ``auth_tag`` are set once the stream is drained."""
        return EncryptStream(self, chunks)

    def decrypt_stream(self, chunks: Iterable[bytes], nonce: bytes, auth_tag: bytes) -> Iterator[bytes]:
        """Yield plaintext chunks.

        Output is only authentic once the iterator finishes without raising;
        on DecryptionError everything already yielded must be discarded.
        """
        if len(nonce) != NONCE_BYTES or len(auth_tag) != TAG_BYTES:
            raise DecryptionError("Malformed blob envelope")
        if self.algorithm_id != "AES-256-GCM":
            yield self.decrypt(b"".join(chunks), nonce, auth_tag)
            return
        decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce, auth_tag)).decryptor()
        for chunk in chunks:
            yield decryptor.update(chunk)
        try:
            tail = decryptor.finalize()
        except InvalidTag as exc:
            raise DecryptionError("Blob authentication failed") from exc
        if tail:
            yield tail


class EncryptStream:
    """Iterable of ciphertext chunks produced by ``BlobCipher.encrypt_stream``."""

    def __init__(self, cipher: BlobCipher, chunks: Iterable[bytes]):
        self._cipher = cipher
        self._chunks = chunks
        self.nonce = os.urandom(NONCE_BYTES)
        self.auth_tag: bytes | None = None
        self.size = 0

    def __iter__(self) -> Iterator[bytes]:
        cipher = self._cipher
        if cipher.algorithm_id != "AES-256-GCM":
            # No incremental API for ChaCha20-Poly1305; buffer within the size cap
            buf = bytearray()
            for chunk in self._chunks:
                buf.extend(chunk)
                cipher._check_size(len(buf))
            self.size = len(buf)
            sealed = _AEADS[cipher.algorithm_id](cipher._key).encrypt(self.nonce, bytes(buf), None)
            self.auth_tag = sealed[-TAG_BYTES:]
            yield sealed[:-TAG_BYTES]
            return

        encryptor = Cipher(algorithms.AES(cipher._key), modes.GCM(self.nonce)).encryptor()
        for chunk in self._chunks:
            self.size += len(chunk)
            cipher._check_size(self.size)
            yield encryptor.update(chunk)
        tail = encryptor.finalize()
        self.auth_tag = encryptor.tag
        if tail:
            yield tail
