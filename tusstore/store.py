"""An upload store backed by an S3-compatible object service."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace

from tusstore.errors import TusError
from tusstore.fileinfo import FileInfo
from tusstore.partsize import calc_optimal_part_size, key_with_prefix, sanitize_metadata_value
from tusstore.service import Part, S3Service
from tusstore.upload import S3Upload

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB
TIB = 1024 * GIB

DEFAULT_MAX_PART_SIZE = 5 * GIB
DEFAULT_MIN_PART_SIZE = 5 * MIB
DEFAULT_PREFERRED_PART_SIZE = 50 * MIB
DEFAULT_MAX_MULTIPART_PARTS = 10000
DEFAULT_MAX_OBJECT_SIZE = 5 * TIB
DEFAULT_MAX_BUFFERED_PARTS = 20


def _new_object_id() -> str:
    return secrets.token_hex(16)


@dataclass
class S3Store:
    """Keeps uploads as multipart uploads plus ``.info`` and ``.part`` objects.

    ``object_prefix`` is put in front of every content object's key;
    ``metadata_object_prefix`` in front of ``.info`` and ``.part`` keys, falling
    back to ``object_prefix`` when empty.
    """

    bucket: str
    service: S3Service
    object_prefix: str = ""
    metadata_object_prefix: str = ""
    max_part_size: int = DEFAULT_MAX_PART_SIZE
    min_part_size: int = DEFAULT_MIN_PART_SIZE
    preferred_part_size: int = DEFAULT_PREFERRED_PART_SIZE
    max_multipart_parts: int = DEFAULT_MAX_MULTIPART_PARTS
    max_object_size: int = DEFAULT_MAX_OBJECT_SIZE
    max_buffered_parts: int = DEFAULT_MAX_BUFFERED_PARTS
    temporary_directory: str = ""
    disable_content_hashes: bool = False

    def new_upload(self, info: FileInfo) -> S3Upload:
        """Create a multipart upload and its info object for ``info``."""
        if info.size > self.max_object_size:
            raise TusError(
                f"s3store: upload size of {info.size} bytes exceeds MaxObjectSize "
                f"of {self.max_object_size} bytes"
            )

        object_id = info.id or _new_object_id()
        metadata = {
            key: sanitize_metadata_value(value) for key, value in (info.meta_data or {}).items()
        }
        key = self.key_with_prefix(object_id)

        try:
            multipart_id = self.service.create_multipart_upload(self.bucket, key, metadata)
        except Exception as err:
            raise TusError(f"s3store: unable to create multipart upload:\n{err}") from err

        info = replace(
            info,
            id=f"{object_id}+{multipart_id}",
            storage={"Type": "s3store", "Bucket": self.bucket, "Key": key},
        )
        upload = S3Upload(info.id, self)
        try:
            upload._write_info(info)
        except Exception as err:
            raise TusError(f"s3store: unable to create info file:\n{err}") from err
        return upload

    def get_upload(self, upload_id: str) -> S3Upload:
        """Return a handle for an existing upload; nothing is fetched yet."""
        return S3Upload(upload_id, self)

    def calc_optimal_part_size(self, size: int) -> int:
        """Choose the part size for an upload of ``size`` bytes."""
        return calc_optimal_part_size(
            size, self.preferred_part_size, self.max_multipart_parts, self.max_part_size
        )

    def key_with_prefix(self, key: str) -> str:
        """Key of a content object."""
        return key_with_prefix(self.object_prefix, key)

    def metadata_key_with_prefix(self, key: str) -> str:
        """Key of an ``.info`` or ``.part`` object."""
        return key_with_prefix(self.metadata_object_prefix or self.object_prefix, key)

    def list_all_parts(self, upload_id: str) -> list[Part]:
        """Collect every part of the multipart upload, following all pages."""
        object_id, multipart_id = (upload_id.partition("+")[0::2]
                                   if "+" in upload_id else ("", ""))
        key = self.key_with_prefix(object_id)
        parts: list[Part] = []
        marker = 0
        while True:
            page = self.service.list_parts(
                self.bucket, key, multipart_id, part_number_marker=marker
            )
            parts.extend(page.parts)
            if not page.is_truncated or page.next_part_number_marker is None:
                return parts
            marker = page.next_part_number_marker