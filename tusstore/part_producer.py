"""Slicing a byte stream into temporary files of a fixed size."""

from __future__ import annotations

import contextlib
import os
import queue
import tempfile
import threading
from typing import IO, BinaryIO, Union

TEMP_FILE_PREFIX = "tusd-s3-tmp-"

_CHUNK_SIZE = 64 * 1024
_POLL_INTERVAL = 0.05

PathLike = Union[str, "os.PathLike[str]", None]


def clean_up_temp_file(file: IO[bytes]) -> None:
    """Close a temporary file and delete it from disk, ignoring failures."""
    with contextlib.suppress(OSError):
        file.close()
    with contextlib.suppress(OSError):
        os.remove(file.name)


def _copy_limited(reader: BinaryIO, file: IO[bytes], limit: int) -> int:
    written = 0
    while written < limit:
        chunk = reader.read(min(limit - written, _CHUNK_SIZE))
        if not chunk:
            break
        file.write(chunk)
        written += len(chunk)
    return written


class PartProducer:
    """Reads ``reader`` in parts and hands each part over as a temporary file.

    Files are put on ``files``; ``None`` marks the end of the stream. Setting
    ``done`` asks the producer to stop early. After setting it the consumer
    must keep taking items until it receives ``None`` and clean up the files
    it gets. A failure while reading is kept in ``error``.
    """

    def __init__(
        self,
        reader: BinaryIO,
        files: queue.Queue,
        done: threading.Event,
        temporary_directory: PathLike = "",
    ) -> None:
        self.reader = reader
        self.files = files
        self.done = done
        self.temporary_directory = temporary_directory
        self.error: Exception | None = None

    def produce(self, part_size: int) -> None:
        """Produce parts of at most ``part_size`` bytes until the stream ends."""
        try:
            while True:
                try:
                    file = self._next_part(part_size)
                except Exception as err:
                    self.error = err
                    return
                if file is None:
                    return
                if not self._offer(file):
                    clean_up_temp_file(file)
                    return
        finally:
            self.files.put(None)

    def _offer(self, file: IO[bytes]) -> bool:
        while not self.done.is_set():
            try:
                self.files.put(file, timeout=_POLL_INTERVAL)
            except queue.Full:
                continue
            return True
        return False

    def _next_part(self, size: int) -> IO[bytes] | None:
        file = tempfile.NamedTemporaryFile(
            mode="w+b",
            prefix=TEMP_FILE_PREFIX,
            dir=self.temporary_directory or None,
            delete=False,
        )
        try:
            written = _copy_limited(self.reader, file, size)
        except BaseException:
            clean_up_temp_file(file)
            raise
        if written == 0:
            clean_up_temp_file(file)
            return None
        file.seek(0)
        return file