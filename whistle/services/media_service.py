"""
Media Service: encrypted attachments for reports.

Attachments are encrypted with the process Blob Cipher before they reach the
blob store.  The store only ever sees ciphertext; the envelope (nonce, tag,
algorithm) is kept on the ReportFile row.

    media = MediaService(cipher.blob_cipher(), DatabaseBlobStore())
    ref = media.attach_file(report, "photo.jpg", "image/jpeg", data)
    plaintext = media.open_file(ref)

    # Binary file objects (e.g. upload streams) are encrypted chunk by chunk
    # and can be read back the same way.
    ref = media.attach_file(report, "clip.mp4", "video/mp4", request.files["file"].stream)
    for chunk in media.open_stream(ref): ...
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterable, Iterator

from whistle.core.exceptions import DecryptionError, NotFoundError, ValidationError
from whistle.models import db
from whistle.models.report import EncryptedBlob, Report, ReportFile
from whistle.utils.crypto import BlobCipher

logger = logging.getLogger(__name__)

IMAGE_TYPES = {
    "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/bmp",
}
VIDEO_TYPES = {
    "video/mp4", "video/mpeg", "video/quicktime", "video/avi", "video/wmv",
    "video/mov", "video/webm", "video/3gpp", "video/x-msvideo",
}
AUDIO_TYPES = {"audio/mpeg", "audio/mp4", "audio/ogg", "audio/wav", "audio/webm"}
DOCUMENT_TYPES = {"application/pdf"}

ALLOWED_MIME_TYPES = IMAGE_TYPES | VIDEO_TYPES | AUDIO_TYPES | DOCUMENT_TYPES
CHUNK_BYTES = 64 * 1024


class BlobStore(ABC):
    """Opaque object store for ciphertext."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store ``data`` and return its storage id."""

    @abstractmethod
    def get(self, storage_id: str) -> bytes:
        """Return the bytes stored under ``storage_id``."""

    def put_stream(self, chunks: Iterable[bytes]) -> str:
        """Store an iterable of chunks; stores without native streaming buffer it."""
        return self.put(b"".join(chunks))

    def get_stream(self, storage_id: str, chunk_size: int = CHUNK_BYTES) -> Iterator[bytes]:
        data = self.get(storage_id)
        for start in range(0, len(data), chunk_size):
            yield data[start:start + chunk_size]


class DatabaseBlobStore(BlobStore):
    """Blob store on the ``encrypted_blobs`` table (same transaction as the caller)."""

    def put(self, data: bytes) -> str:
        storage_id = uuid.uuid4().hex
        db.session.add(EncryptedBlob(storage_id=storage_id, data=data, length=len(data)))
        return storage_id

    def get(self, storage_id: str) -> bytes:
        blob = db.session.get(EncryptedBlob, storage_id)
        if blob is None:
            raise NotFoundError(resource="EncryptedBlob", resource_id=storage_id)
        return blob.data


def _read_chunks(fileobj: BinaryIO, chunk_size: int = CHUNK_BYTES) -> Iterator[bytes]:
    while True:
        chunk = fileobj.read(chunk_size)
        if not chunk:
            return
        yield chunk


class MediaService:
    def __init__(self, blob_cipher: BlobCipher, blob_store: BlobStore | None = None):
        self.blob_cipher = blob_cipher
        self.blob_store = blob_store or DatabaseBlobStore()

    def validate(self, filename: str, mime_type: str, size: int | None) -> None:
        """Check name and type; ``size`` is skipped when not yet known (streams)."""
        if not filename or not filename.strip():
            raise ValidationError("filename is required", details={"filename": "required"})
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                f"File type {mime_type} is not allowed",
                details={"mime_type": sorted(ALLOWED_MIME_TYPES)},
            )
        if size is None:
            return
        if size <= 0:
            raise ValidationError("File is empty", details={"size": size})
        if size > self.blob_cipher.max_bytes:
            raise ValidationError(
                f"File exceeds {self.blob_cipher.max_bytes} bytes",
                details={"size": size},
            )

    def attach_file(self, report: Report, filename: str, mime_type: str,
                    data: bytes | BinaryIO) -> ReportFile:
        """Encrypt ``data``, store the ciphertext and add a file ref to ``report``.

        ``data`` is either bytes or a binary file object (e.g. an upload
        stream), which is encrypted chunk by chunk.

        Nothing is committed here; the caller's transaction covers the report,
        the blob and the ref together.

        Raises:
            ValidationError: MIME type not allowed, empty or oversized file.
            EncryptionError: the blob could not be encrypted.
        """
        if isinstance(data, (bytes, bytearray)):
            self.validate(filename, mime_type, len(data))
            encrypted, nonce, auth_tag = self.blob_cipher.encrypt(data)
            storage_id = self.blob_store.put(encrypted)
            size = len(data)
        else:
            self.validate(filename, mime_type, None)
            stream = self.blob_cipher.encrypt_stream(self._capped(data))
            storage_id = self.blob_store.put_stream(stream)
            if stream.size == 0:
                raise ValidationError("File is empty", details={"size": 0})
            nonce, auth_tag, size = stream.nonce, stream.auth_tag, stream.size

        ref = ReportFile(
            storage_id=storage_id,
            original_filename=filename.strip()[:255],
            mime_type=mime_type,
            size=size,
            nonce=nonce,
            auth_tag=auth_tag,
            algorithm_id=self.blob_cipher.algorithm_id,
        )
        report.files.append(ref)
        logger.info(
            "Attachment encrypted (%s, %d bytes)", mime_type, size,
            extra={"short_id": report.short_id},
        )
        return ref

    def _capped(self, fileobj: BinaryIO) -> Iterator[bytes]:
        size = 0
        for chunk in _read_chunks(fileobj):
            size += len(chunk)
            if size > self.blob_cipher.max_bytes:
                raise ValidationError(
                    f"File exceeds {self.blob_cipher.max_bytes} bytes",
                    details={"size": size},
                )
            yield chunk

    def _check_algorithm(self, file_ref: ReportFile) -> None:
        if file_ref.algorithm_id != self.blob_cipher.algorithm_id:
            raise DecryptionError(f"Attachment sealed with {file_ref.algorithm_id}")

    def open_file(self, file_ref: ReportFile) -> bytes:
        """Fetch and decrypt an attachment; DecryptionError on tamper."""
        self._check_algorithm(file_ref)
        encrypted = self.blob_store.get(file_ref.storage_id)
        return self.blob_cipher.decrypt(encrypted, file_ref.nonce, file_ref.auth_tag)

    def open_stream(self, file_ref: ReportFile) -> Iterator[bytes]:
        """Decrypted chunks of an attachment.

        The content is only authentic once the iterator is exhausted without
        DecryptionError; a consumer must discard partial output on failure.
        """
        self._check_algorithm(file_ref)
        chunks = self.blob_store.get_stream(file_ref.storage_id)
        return self.blob_cipher.decrypt_stream(chunks, file_ref.nonce, file_ref.auth_tag)
