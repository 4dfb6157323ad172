"""Operations of an S3-compatible object store, with an in-memory backend."""

from __future__ import annotations

import hashlib
import io
import threading
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import BinaryIO, Union
from urllib.parse import quote, urlencode

from tusstore.errors import S3ServiceError

MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10000
DEFAULT_MAX_PARTS = 1000
MAX_PRESIGN_EXPIRY = timedelta(days=7)

Body = Union[bytes, bytearray, memoryview, BinaryIO]


@dataclass(frozen=True)
class Part:
    """One part of a multipart upload as reported by the service."""

    part_number: int | None = None
    etag: str | None = None
    size: int | None = None


@dataclass
class ListPartsResult:
    """One page of parts belonging to a multipart upload."""

    parts: list[Part] = field(default_factory=list)
    is_truncated: bool = False
    next_part_number_marker: int | None = None


@dataclass
class ObjectResult:
    """An object fetched from the service."""

    body: BinaryIO = field(default_factory=io.BytesIO)
    content_length: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def read(self) -> bytes:
        """Read the rest of the object's content."""
        return self.body.read()

    def close(self) -> None:
        """Release the object's body."""
        self.body.close()

    def __enter__(self) -> ObjectResult:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


@dataclass(frozen=True)
class DeleteError:
    """A failure to delete one key during a batch deletion."""

    key: str
    code: str
    message: str


@dataclass
class _StoredObject:
    data: bytes
    etag: str
    metadata: dict[str, str]


@dataclass
class _StoredPart:
    data: bytes
    etag: str


@dataclass
class _MultipartUpload:
    bucket: str
    key: str
    metadata: dict[str, str]
    parts: dict[int, _StoredPart] = field(default_factory=dict)


def _read_body(body: Body | None) -> bytes:
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body)
    data = body.read()
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError("object body must yield bytes")
    return bytes(data)


def _digest(data: bytes) -> bytes:
    return hashlib.md5(data, usedforsecurity=False).digest()


def _etag(data: bytes) -> str:
    return f'"{_digest(data).hex()}"'


def _multipart_etag(parts: list[_StoredPart]) -> str:
    combined = b"".join(_digest(part.data) for part in parts)
    return f'"{_digest(combined).hex()}-{len(parts)}"'


def _check_part_number(part_number: int) -> None:
    if not MIN_PART_NUMBER <= part_number <= MAX_PART_NUMBER:
        raise S3ServiceError(
            "InvalidArgument",
            f"Part number must be an integer between {MIN_PART_NUMBER} and "
            f"{MAX_PART_NUMBER}, inclusive",
        )


class S3Service:
    """An S3-compatible object store that keeps all objects in memory.

    Buckets spring into existence on first use. Errors carry the codes the
    real service uses, such as ``NoSuchKey`` and ``NoSuchUpload``.
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], _StoredObject] = {}
        self._uploads: dict[str, _MultipartUpload] = {}
        self._mutex = threading.Lock()

    def _upload(self, bucket: str, key: str, upload_id: str) -> _MultipartUpload:
        upload = self._uploads.get(upload_id)
        if upload is None or upload.bucket != bucket or upload.key != key:
            raise S3ServiceError("NoSuchUpload", "The specified upload does not exist.")
        return upload

    def put_object(
        self, bucket: str, key: str, body: Body | None, content_length: int | None = None
    ) -> str:
        """Store ``body`` under ``key`` and return its ETag."""
        data = _read_body(body)
        if content_length is not None and content_length != len(data):
            raise S3ServiceError(
                "IncompleteBody",
                f"expected {content_length} bytes but received {len(data)}",
            )
        etag = _etag(data)
        with self._mutex:
            self._objects[(bucket, key)] = _StoredObject(data, etag, {})
        return etag

    def list_parts(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number_marker: int = 0,
        max_parts: int | None = None,
    ) -> ListPartsResult:
        """List the parts numbered above ``part_number_marker``, one page at a time."""
        limit = DEFAULT_MAX_PARTS if max_parts is None else max_parts
        if limit < 0:
            raise S3ServiceError("InvalidArgument", "max-parts must not be negative")
        with self._mutex:
            upload = self._upload(bucket, key, upload_id)
            remaining = [
                Part(part_number=number, etag=part.etag, size=len(part.data))
                for number, part in sorted(upload.parts.items())
                if number > part_number_marker
            ]
        page = remaining[:limit]
        truncated = len(remaining) > limit
        next_marker = page[-1].part_number if page else part_number_marker
        return ListPartsResult(
            parts=page,
            is_truncated=truncated,
            next_part_number_marker=next_marker if truncated else None,
        )

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: Body | None
    ) -> str:
        """Store one part of a multipart upload and return its ETag."""
        _check_part_number(part_number)
        data = _read_body(body)
        etag = _etag(data)
        with self._mutex:
            upload = self._upload(bucket, key, upload_id)
            upload.parts[part_number] = _StoredPart(data, etag)
        return etag

    def get_object(self, bucket: str, key: str) -> ObjectResult:
        """Fetch an object, raising ``NoSuchKey`` if it does not exist."""
        with self._mutex:
            stored = self._objects.get((bucket, key))
        if stored is None:
            raise S3ServiceError("NoSuchKey", "The specified key does not exist.")
        return ObjectResult(
            body=io.BytesIO(stored.data),
            content_length=len(stored.data),
            metadata=dict(stored.metadata),
        )

    def create_multipart_upload(
        self, bucket: str, key: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        """Begin a multipart upload and return its id."""
        upload_id = uuid.uuid4().hex
        with self._mutex:
            self._uploads[upload_id] = _MultipartUpload(bucket, key, dict(metadata or {}))
        return upload_id

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Discard a multipart upload and all of its parts."""
        with self._mutex:
            self._upload(bucket, key, upload_id)
            del self._uploads[upload_id]

    def delete_object(self, bucket: str, key: str) -> None:
        """Remove an object; removing a missing object succeeds."""
        with self._mutex:
            self._objects.pop((bucket, key), None)

    def delete_objects(
        self, bucket: str, keys: Iterable[str], quiet: bool = True
    ) -> list[DeleteError]:
        """Remove several objects at once.

        In quiet mode missing keys are not reported; otherwise each missing key
        yields a ``NoSuchKey`` entry.
        """
        errors: list[DeleteError] = []
        with self._mutex:
            for key in keys:
                if self._objects.pop((bucket, key), None) is None and not quiet:
                    errors.append(
                        DeleteError(key, "NoSuchKey", "The specified key does not exist.")
                    )
        return errors

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: Iterable[Part]
    ) -> str:
        """Assemble the listed parts into the final object and return its ETag."""
        chosen = list(parts)
        if not chosen:
            raise S3ServiceError(
                "MalformedXML", "You must specify at least one part to complete the upload."
            )
        with self._mutex:
            upload = self._upload(bucket, key, upload_id)
            stored_parts: list[_StoredPart] = []
            previous = 0
            for part in chosen:
                number = part.part_number
                if number is None or number <= previous:
                    raise S3ServiceError(
                        "InvalidPartOrder", "The list of parts was not in ascending order."
                    )
                stored = upload.parts.get(number)
                if stored is None or (part.etag is not None and part.etag != stored.etag):
                    raise S3ServiceError(
                        "InvalidPart", f"Part {number} could not be found or its ETag differs."
                    )
                stored_parts.append(stored)
                previous = number
            data = b"".join(stored.data for stored in stored_parts)
            etag = _multipart_etag(stored_parts)
            self._objects[(bucket, key)] = _StoredObject(data, etag, dict(upload.metadata))
            del self._uploads[upload_id]
        return etag

    def upload_part_copy(
        self, bucket: str, key: str, upload_id: str, part_number: int, copy_source: str
    ) -> str:
        """Use an existing object, named ``bucket/key``, as a part."""
        _check_part_number(part_number)
        source_bucket, sep, source_key = copy_source.lstrip("/").partition("/")
        if not sep or not source_bucket or not source_key:
            raise S3ServiceError("InvalidArgument", f"Invalid copy source: {copy_source}")
        with self._mutex:
            source = self._objects.get((source_bucket, source_key))
            if source is None:
                raise S3ServiceError("NoSuchKey", "The specified key does not exist.")
            upload = self._upload(bucket, key, upload_id)
            etag = _etag(source.data)
            upload.parts[part_number] = _StoredPart(source.data, etag)
        return etag


class PresigningS3Service(S3Service):
    """A service that can also hand out presigned URLs for part uploads."""

    def __init__(self, endpoint: str = "http://localhost:9000") -> None:
        super().__init__()
        self.endpoint = endpoint.rstrip("/")

    def presign_upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        expires: timedelta | float,
    ) -> str:
        """Return a URL to which one part may be sent with a plain PUT."""
        seconds = expires.total_seconds() if isinstance(expires, timedelta) else float(expires)
        if not 0 < seconds <= MAX_PRESIGN_EXPIRY.total_seconds():
            raise ValueError(
                f"presigned URL expiry must be between 1 second and "
                f"{int(MAX_PRESIGN_EXPIRY.total_seconds())} seconds"
            )
        _check_part_number(part_number)
        path = quote(f"{bucket}/{key}", safe="/~")
        query = urlencode(
            {
                "partNumber": part_number,
                "uploadId": upload_id,
                "X-Amz-Expires": int(seconds),
            }
        )
        return f"{self.endpoint}/{path}?{query}"