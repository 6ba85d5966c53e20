"""Turn a byte stream into a sequence of part-sized temporary files."""

from __future__ import annotations

import os
import queue
import tempfile
import threading
from typing import IO, BinaryIO, Iterator

TEMP_FILE_PREFIX = "tusbucket-s3-tmp-"

_COPY_CHUNK = 64 * 1024
_POLL_SECONDS = 0.05
_END = object()


def clean_up_temp_file(file: IO[bytes]) -> None:
    """Close a temporary file and remove it from disk."""
    file.close()
    try:
        os.remove(file.name)
    except OSError:
        pass


class PartProducer:
    """Reads a stream in a background thread and hands it out as temporary files.

    At most ``max_buffered_parts`` files wait on disk for the consumer while
    the consumer works on the current one.  Files handed out belong to the
    consumer, which must clean them up.  A read failure ends the sequence
    and is kept in ``error``.
    """

    def __init__(
        self,
        reader: BinaryIO,
        temporary_directory: str | None = None,
        max_buffered_parts: int = 0,
    ) -> None:
        self._reader = reader
        self.temporary_directory = temporary_directory or None
        self._queue: queue.Queue = queue.Queue(maxsize=max(max_buffered_parts, 1))
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self.error: BaseException | None = None

    def parts(self, part_size: int) -> Iterator[IO[bytes]]:
        """Yield temporary files of at most part_size bytes, in stream order."""
        self._thread = threading.Thread(
            target=self._produce, args=(part_size,), daemon=True
        )
        self._thread.start()
        try:
            while True:
                try:
                    item = self._queue.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    if self._done.is_set():
                        return
                    continue
                if item is _END:
                    return
                yield item
        finally:
            self.close()

    def next_part(self, size: int) -> IO[bytes] | None:
        """Copy up to size bytes into a new temporary file.

        Returns None when the stream has no more data.
        """
        file = tempfile.NamedTemporaryFile(
            mode="w+b",
            prefix=TEMP_FILE_PREFIX,
            dir=self.temporary_directory,
            delete=False,
        )
        written = 0
        try:
            while written < size:
                chunk = self._reader.read(min(size - written, _COPY_CHUNK))
                if not chunk:
                    break
                file.write(chunk)
                written += len(chunk)
        except BaseException:
            clean_up_temp_file(file)
            raise

        if written == 0:
            clean_up_temp_file(file)
            return None

        file.flush()
        file.seek(0)
        return file

    def close(self) -> None:
        """Stop producing and remove files the consumer never received."""
        self._done.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not _END:
                clean_up_temp_file(item)

    def _send(self, item: object) -> bool:
        while not self._done.is_set():
            try:
                self._queue.put(item, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _produce(self, part_size: int) -> None:
        try:
            while not self._done.is_set():
                try:
                    file = self.next_part(part_size)
                except Exception as exc:  # any read failure ends the stream
                    self.error = exc
                    break
                if file is None:
                    break
                if not self._send(file):
                    clean_up_temp_file(file)
                    break
        finally:
            self._send(_END)