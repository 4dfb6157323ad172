"""A single upload kept in an S3-compatible object store."""

from __future__ import annotations

import os
import queue
import shutil
import tempfile
import threading
import urllib.error
import urllib.request
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from typing import IO, BinaryIO, Protocol, Union

from tusstore.errors import (
    HTTPError,
    MultiError,
    NotFoundError,
    S3ServiceError,
    TusError,
    is_service_error,
)
from tusstore.fileinfo import FileInfo
from tusstore.part_producer import TEMP_FILE_PREFIX, PartProducer, clean_up_temp_file
from tusstore.partsize import split_ids
from tusstore.service import ObjectResult, Part, PresigningS3Service, S3Service

CONCAT_TEMP_FILE_PREFIX = "tusd-s3-concat-tmp-"
PRESIGN_EXPIRY = timedelta(minutes=15)

_MISSING_PART_CODES = ("NoSuchKey", "NotFound", "AccessDenied")

Source = Union[bytes, bytearray, BinaryIO]


class UploadStore(Protocol):
    """What an upload needs from the store that owns it."""

    bucket: str
    service: S3Service
    min_part_size: int
    max_buffered_parts: int
    temporary_directory: str
    disable_content_hashes: bool

    def calc_optimal_part_size(self, size: int) -> int: ...

    def key_with_prefix(self, key: str) -> str: ...

    def metadata_key_with_prefix(self, key: str) -> str: ...

    def list_all_parts(self, upload_id: str) -> list[Part]: ...


class _ChainedReader:
    """Reads from several binary readers one after another."""

    def __init__(self, *readers: BinaryIO) -> None:
        self._readers = list(readers)

    def read(self, size: int | None = -1) -> bytes:
        if size is None or size < 0:
            data = b"".join(reader.read() for reader in self._readers)
            self._readers.clear()
            return data
        while self._readers:
            chunk = self._readers[0].read(size)
            if chunk:
                return chunk
            self._readers.pop(0)
        return b""


def _as_reader(src: Source) -> BinaryIO:
    if isinstance(src, (bytes, bytearray)):
        import io

        return io.BytesIO(bytes(src))
    return src


class S3Upload:
    """An upload identified by ``"<object id>+<multipart id>"``.

    The upload's info is fetched lazily from its ``.info`` object and cached.
    """

    def __init__(self, upload_id: str, store: UploadStore, info: FileInfo | None = None) -> None:
        self.id = upload_id
        self.store = store
        self.info = info

    # -- info -------------------------------------------------------------

    def get_info(self) -> FileInfo:
        """Return the upload's info, fetching it on first use."""
        if self.info is None:
            self.info = self._fetch_info()
        return replace(self.info)

    def _write_info(self, info: FileInfo) -> None:
        store = self.store
        object_id, _ = split_ids(self.id)
        self.info = replace(info)
        data = info.to_json()
        store.service.put_object(
            store.bucket,
            store.metadata_key_with_prefix(object_id + ".info"),
            data,
            len(data),
        )

    def _fetch_info(self) -> FileInfo:
        store = self.store
        object_id, _ = split_ids(self.id)
        try:
            result = store.service.get_object(
                store.bucket, store.metadata_key_with_prefix(object_id + ".info")
            )
        except S3ServiceError as err:
            if is_service_error(err, "NoSuchKey"):
                raise NotFoundError() from err
            raise
        with result:
            info = FileInfo.from_json(result.read())

        try:
            parts = store.list_all_parts(self.id)
        except S3ServiceError as err:
            # The info object exists but the multipart upload does not, so it
            # has been completed already.
            if is_service_error(err, "NoSuchUpload") or is_service_error(err, "NoSuchKey"):
                info.offset = info.size
                return info
            raise

        offset = sum(part.size or 0 for part in parts)
        incomplete = self._get_incomplete_part(object_id)
        if incomplete is not None:
            with incomplete:
                offset += incomplete.content_length or 0
        info.offset = offset
        return info

    def declare_length(self, length: int) -> None:
        """Fix the size of an upload whose length was deferred."""
        info = self.get_info()
        info.size = length
        info.size_is_deferred = False
        self._write_info(info)

    # -- writing ----------------------------------------------------------

    def write_chunk(self, offset: int, src: Source) -> int:
        """Store the bytes of ``src`` written at ``offset``; return how many were taken."""
        store = self.store
        object_id, multipart_id = split_ids(self.id)

        info = self.get_info()
        size = info.size
        part_size = store.calc_optimal_part_size(size)
        parts = store.list_all_parts(self.id)
        next_part_number = len(parts) + 1

        reader = _as_reader(src)
        incomplete_file, incomplete_size = self._download_incomplete_part(object_id)
        try:
            if incomplete_file is not None:
                self._delete_incomplete_part(object_id)
                reader = _ChainedReader(incomplete_file, reader)
            return self._write_parts(
                reader,
                offset,
                size,
                info.size_is_deferred,
                part_size,
                next_part_number,
                incomplete_size,
            )
        finally:
            if incomplete_file is not None:
                clean_up_temp_file(incomplete_file)

    def _write_parts(
        self,
        reader: BinaryIO | _ChainedReader,
        offset: int,
        size: int,
        size_is_deferred: bool,
        part_size: int,
        next_part_number: int,
        incomplete_size: int,
    ) -> int:
        store = self.store
        object_id, multipart_id = split_ids(self.id)

        files: queue.Queue = queue.Queue(maxsize=max(store.max_buffered_parts, 1))
        done = threading.Event()
        producer = PartProducer(reader, files, done, store.temporary_directory)
        thread = threading.Thread(target=producer.produce, args=(part_size,), daemon=True)
        thread.start()

        bytes_uploaded = 0
        finished = False
        try:
            while True:
                file = files.get()
                if file is None:
                    finished = True
                    break
                n = os.fstat(file.fileno()).st_size
                is_final = not size_is_deferred and size == (offset - incomplete_size) + n
                if n >= store.min_part_size or is_final:
                    self._put_part(object_id, multipart_id, next_part_number, file, n)
                else:
                    self._put_incomplete_part(object_id, file)
                    bytes_uploaded += n
                    return bytes_uploaded - incomplete_size
                offset += n
                bytes_uploaded += n
                next_part_number += 1
        finally:
            done.set()
            if not finished:
                # Leftover parts must not leak on disk.
                while (leftover := files.get()) is not None:
                    clean_up_temp_file(leftover)
            thread.join()

        if producer.error is not None:
            raise producer.error
        return bytes_uploaded - incomplete_size

    def _put_part(
        self, object_id: str, multipart_id: str, part_number: int, file: IO[bytes], size: int
    ) -> None:
        store = self.store
        key = store.key_with_prefix(object_id)
        try:
            if not store.disable_content_hashes:
                store.service.upload_part(store.bucket, key, multipart_id, part_number, file)
                return
            service = store.service
            if not isinstance(service, PresigningS3Service):
                raise TusError("s3store: failed to cast S3 service for presigning")
            url = service.presign_upload_part(
                store.bucket, key, multipart_id, part_number, PRESIGN_EXPIRY
            )
            self._send_presigned(url, file, size)
        finally:
            clean_up_temp_file(file)

    @staticmethod
    def _send_presigned(url: str, file: IO[bytes], size: int) -> None:
        # An explicit length avoids chunked transfer encoding, which S3 rejects.
        request = urllib.request.Request(
            url, data=file, method="PUT", headers={"Content-Length": str(size)}
        )
        try:
            with urllib.request.urlopen(request) as response:
                status = response.status
                body = response.read()
        except urllib.error.HTTPError as err:
            status = err.code
            body = err.read()
        if status != 200:
            text = body.decode("utf-8", errors="replace")
            raise TusError(
                f"s3store: unexpected response code {status} for presigned upload: {text}"
            )

    # -- incomplete parts -------------------------------------------------

    def _incomplete_part_key(self, object_id: str) -> str:
        return self.store.metadata_key_with_prefix(object_id + ".part")

    def _get_incomplete_part(self, object_id: str) -> ObjectResult | None:
        store = self.store
        try:
            return store.service.get_object(store.bucket, self._incomplete_part_key(object_id))
        except S3ServiceError as err:
            if any(is_service_error(err, code) for code in _MISSING_PART_CODES):
                return None
            raise

    def _download_incomplete_part(self, object_id: str) -> tuple[IO[bytes] | None, int]:
        result = self._get_incomplete_part(object_id)
        if result is None:
            return None, 0
        with result:
            file = tempfile.NamedTemporaryFile(
                mode="w+b",
                prefix=TEMP_FILE_PREFIX,
                dir=self.store.temporary_directory or None,
                delete=False,
            )
            try:
                shutil.copyfileobj(result.body, file)
                written = file.tell()
                if result.content_length is not None and written < result.content_length:
                    raise TusError("short read of incomplete upload")
                file.seek(0)
            except BaseException:
                clean_up_temp_file(file)
                raise
        return file, written

    def _put_incomplete_part(self, object_id: str, file: IO[bytes]) -> None:
        store = self.store
        try:
            store.service.put_object(store.bucket, self._incomplete_part_key(object_id), file)
        finally:
            clean_up_temp_file(file)

    def _delete_incomplete_part(self, object_id: str) -> None:
        store = self.store
        store.service.delete_object(store.bucket, self._incomplete_part_key(object_id))

    # -- reading and finishing --------------------------------------------

    def get_reader(self) -> ObjectResult:
        """Return the finished upload's content."""
        store = self.store
        object_id, multipart_id = split_ids(self.id)
        key = store.key_with_prefix(object_id)
        try:
            return store.service.get_object(store.bucket, key)
        except S3ServiceError as err:
            if not is_service_error(err, "NoSuchKey"):
                raise

        try:
            store.service.list_parts(store.bucket, key, multipart_id, max_parts=0)
        except S3ServiceError as err:
            if is_service_error(err, "NoSuchUpload"):
                raise NotFoundError() from err
            raise
        raise HTTPError("cannot stream non-finished upload", 400)

    def terminate(self) -> None:
        """Abort the multipart upload and delete every object of the upload."""
        store = self.store
        object_id, multipart_id = split_ids(self.id)

        def abort() -> list[BaseException]:
            try:
                store.service.abort_multipart_upload(
                    store.bucket, store.key_with_prefix(object_id), multipart_id
                )
            except Exception as err:
                if not is_service_error(err, "NoSuchUpload"):
                    return [err]
            return []

        def delete() -> list[BaseException]:
            keys = [
                store.key_with_prefix(object_id),
                store.metadata_key_with_prefix(object_id + ".part"),
                store.metadata_key_with_prefix(object_id + ".info"),
            ]
            try:
                failures = store.service.delete_objects(store.bucket, keys, quiet=True)
            except Exception as err:
                return [err]
            return [
                TusError(f"AWS S3 Error ({failure.code}) for object {failure.key}: {failure.message}")
                for failure in failures
                if failure.code != "NoSuchKey"
            ]

        with ThreadPoolExecutor(max_workers=2) as pool:
            abort_future = pool.submit(abort)
            delete_future = pool.submit(delete)
            errors = abort_future.result() + delete_future.result()

        if errors:
            raise MultiError(errors)

    def finish_upload(self) -> None:
        """Complete the multipart upload, turning its parts into one object."""
        store = self.store
        object_id, multipart_id = split_ids(self.id)
        key = store.key_with_prefix(object_id)

        parts = store.list_all_parts(self.id)
        if not parts:
            # Completing requires at least one part, so an empty upload gets an empty part.
            etag = store.service.upload_part(store.bucket, key, multipart_id, 1, b"")
            parts = [Part(part_number=1, etag=etag)]

        completed = [Part(part_number=part.part_number, etag=part.etag) for part in parts]
        store.service.complete_multipart_upload(store.bucket, key, multipart_id, completed)

    # -- concatenation ----------------------------------------------------

    def concat_uploads(self, partial_uploads: Sequence[S3Upload]) -> None:
        """Make this upload the concatenation of ``partial_uploads``."""
        infos = [partial.get_info() for partial in partial_uploads]
        # Parts below the minimum size cannot go through a multipart copy.
        if any(info.size < self.store.min_part_size for info in infos):
            self._concat_using_download(partial_uploads)
        else:
            self._concat_using_multipart(partial_uploads)

    def _concat_using_download(self, partial_uploads: Iterable[S3Upload]) -> None:
        store = self.store
        object_id, multipart_id = split_ids(self.id)
        key = store.key_with_prefix(object_id)

        file = tempfile.NamedTemporaryFile(
            mode="w+b",
            prefix=CONCAT_TEMP_FILE_PREFIX,
            dir=store.temporary_directory or None,
            delete=False,
        )
        try:
            for partial in partial_uploads:
                partial_id, _ = split_ids(partial.id)
                with store.service.get_object(
                    store.bucket, store.key_with_prefix(partial_id)
                ) as result:
                    shutil.copyfileobj(result.body, file)
            file.seek(0)
            store.service.put_object(store.bucket, key, file)
        finally:
            clean_up_temp_file(file)

        def abort() -> None:
            try:
                store.service.abort_multipart_upload(store.bucket, key, multipart_id)
            except Exception:
                # The outcome of the concatenation does not depend on this.
                pass

        threading.Thread(target=abort, daemon=True).start()

    def _concat_using_multipart(self, partial_uploads: Sequence[S3Upload]) -> None:
        store = self.store
        object_id, multipart_id = split_ids(self.id)
        key = store.key_with_prefix(object_id)

        def copy(part_number: int, partial_id: str) -> BaseException | None:
            try:
                store.service.upload_part_copy(
                    store.bucket,
                    key,
                    multipart_id,
                    part_number,
                    f"{store.bucket}/{partial_id}",
                )
            except Exception as err:
                return err
            return None

        with ThreadPoolExecutor(max_workers=max(len(partial_uploads), 1)) as pool:
            futures = [
                pool.submit(copy, number, split_ids(partial.id)[0])
                for number, partial in enumerate(partial_uploads, start=1)
            ]
            errors = [err for future in futures if (err := future.result()) is not None]

        if errors:
            raise MultiError(errors)
        self.finish_upload()