"""A single resumable upload kept as a multipart upload in an S3 bucket."""

from __future__ import annotations

import dataclasses
import os
import shutil
import tempfile
import threading
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from typing import IO, TYPE_CHECKING, BinaryIO, Sequence

from .models import (
    AwsError,
    FileInfo,
    MultiError,
    NotFoundError,
    Part,
    is_aws_error,
    split_ids,
)
from .part_producer import PartProducer, clean_up_temp_file

if TYPE_CHECKING:
    from .store import S3Store

CONCAT_TEMP_FILE_PREFIX = "tusbucket-s3-concat-tmp-"
_PRESIGN_EXPIRY_SECONDS = 15 * 60


class _ChainedReader:
    """Reads several binary streams one after another."""

    def __init__(self, *readers: BinaryIO) -> None:
        self._readers = list(readers)

    def read(self, size: int = -1) -> bytes:
        if size == 0:
            return b""
        while self._readers:
            chunk = self._readers[0].read(size)
            if chunk:
                return chunk
            self._readers.pop(0)
        return b""


@dataclasses.dataclass(eq=False)
class S3Upload:
    """An upload identified by "objectId+multipartId" inside a store.

    ``info`` caches the upload's FileInfo once it has been read or written.
    """

    id: str
    store: S3Store
    info: FileInfo | None = None

    def write_info(self, info: FileInfo) -> None:
        """Store info as the upload's .info object and cache it."""
        store = self.store
        object_id, _ = split_ids(self.id)
        self.info = dataclasses.replace(info)
        data = info.to_json()
        store.service.put_object(
            store.bucket,
            store.metadata_key_with_prefix(object_id + ".info"),
            _bytes_reader(data),
            len(data),
        )

    def get_info(self) -> FileInfo:
        """Return the upload's info, fetching it from the bucket on first use."""
        if self.info is None:
            self.info = self._fetch_info()
        return dataclasses.replace(self.info)

    def _fetch_info(self) -> FileInfo:
        store = self.store
        object_id, _ = split_ids(self.id)
        try:
            result = store.service.get_object(
                store.bucket, store.metadata_key_with_prefix(object_id + ".info")
            )
        except AwsError as exc:
            if is_aws_error(exc, "NoSuchKey"):
                raise NotFoundError() from exc
            raise
        with result:
            info = FileInfo.from_json(result.body.read() if result.body else b"")

        try:
            parts = store.list_all_parts(self.id)
        except AwsError as exc:
            # The info object exists but the multipart upload is gone, so the
            # upload has been completed.
            if is_aws_error(exc, "NoSuchUpload"):
                info.offset = info.size
                return info
            raise

        offset = sum(part.size or 0 for part in parts)
        incomplete = store.get_incomplete_part(object_id)
        if incomplete is not None:
            with incomplete:
                offset += incomplete.content_length or 0
        info.offset = offset
        return info

    def write_chunk(self, offset: int, src: BinaryIO) -> int:
        """Upload the data read from src, starting at offset.

        Returns the number of bytes taken from src.
        """
        store = self.store
        object_id, multipart_id = split_ids(self.id)

        info = self.get_info()
        size = info.size
        part_size = store.calc_optimal_part_size(size)
        next_part_number = len(store.list_all_parts(self.id)) + 1

        incomplete_file, incomplete_size = store.download_incomplete_part(object_id)
        try:
            if incomplete_file is not None:
                store.delete_incomplete_part(object_id)
                src = _ChainedReader(incomplete_file, src)

            producer = PartProducer(
                src, store.temporary_directory, store.max_buffered_parts
            )
            parts = producer.parts(part_size)
            bytes_uploaded = 0
            try:
                for file in parts:
                    try:
                        n = os.fstat(file.fileno()).st_size
                    except OSError:
                        clean_up_temp_file(file)
                        raise
                    is_final = (
                        not info.size_is_deferred
                        and size == (offset - incomplete_size) + n
                    )
                    if n >= store.min_part_size or is_final:
                        self._put_part(object_id, multipart_id, next_part_number, file, n)
                    else:
                        store.put_incomplete_part(object_id, file)
                        return bytes_uploaded + n - incomplete_size
                    offset += n
                    bytes_uploaded += n
                    next_part_number += 1
            finally:
                parts.close()
                producer.close()
        finally:
            if incomplete_file is not None:
                clean_up_temp_file(incomplete_file)

        if producer.error is not None:
            raise producer.error
        return bytes_uploaded - incomplete_size

    def _put_part(
        self,
        object_id: str,
        multipart_id: str,
        part_number: int,
        file: IO[bytes],
        size: int,
    ) -> None:
        store = self.store
        key = store.key_with_prefix(object_id)
        try:
            if not store.disable_content_hashes:
                store.service.upload_part(
                    store.bucket, key, multipart_id, part_number, file
                )
            else:
                self._put_presigned_part(key, multipart_id, part_number, file, size)
        finally:
            clean_up_temp_file(file)

    def _put_presigned_part(
        self, key: str, multipart_id: str, part_number: int, file: IO[bytes], size: int
    ) -> None:
        """Send the part ourselves to a presigned URL, skipping body hashing.

        The service must offer ``presign_upload_part(bucket, key, upload_id,
        part_number, expires_in)`` returning a URL.
        """
        store = self.store
        presign = getattr(store.service, "presign_upload_part", None)
        if not callable(presign):
            raise TypeError("s3store: failed to cast S3 service for presigning")
        url = presign(store.bucket, key, multipart_id, part_number, _PRESIGN_EXPIRY_SECONDS)

        # An explicit length keeps the request from being sent chunked.
        request = urllib.request.Request(
            url, data=file, method="PUT", headers={"Content-Length": str(size)}
        )
        try:
            with urllib.request.urlopen(request) as response:
                status = response.status
                body = response.read()
        except urllib.error.HTTPError as exc:
            status = exc.code
            body = exc.read()
        if status != 200:
            text = body.decode("utf-8", errors="replace")
            raise RuntimeError(
                f"s3store: unexpected response code {status} for presigned upload: {text}"
            )

    def get_reader(self) -> BinaryIO:
        """Return a stream of the finished upload's content."""
        store = self.store
        object_id, multipart_id = split_ids(self.id)
        key = store.key_with_prefix(object_id)
        try:
            result = store.service.get_object(store.bucket, key)
        except AwsError as exc:
            if not is_aws_error(exc, "NoSuchKey"):
                raise
        else:
            return result.body

        # Find out whether the upload never existed or is not finished yet.
        try:
            store.service.list_parts(store.bucket, key, multipart_id, max_parts=0)
        except AwsError as exc:
            if is_aws_error(exc, "NoSuchUpload"):
                raise NotFoundError() from exc
            raise
        raise RuntimeError("cannot stream non-finished upload")

    def terminate(self) -> None:
        """Abort the multipart upload and delete all objects of the upload."""
        object_id, multipart_id = split_ids(self.id)
        with ThreadPoolExecutor(max_workers=2) as pool:
            aborting = pool.submit(self._abort_for_terminate, object_id, multipart_id)
            deleting = pool.submit(self._delete_for_terminate, object_id)
        errors = [*aborting.result(), *deleting.result()]
        if errors:
            raise MultiError(errors)

    def _abort_for_terminate(self, object_id: str, multipart_id: str) -> list[BaseException]:
        store = self.store
        try:
            store.service.abort_multipart_upload(
                store.bucket, store.key_with_prefix(object_id), multipart_id
            )
        except Exception as exc:
            if not is_aws_error(exc, "NoSuchUpload"):
                return [exc]
        return []

    def _delete_for_terminate(self, object_id: str) -> list[BaseException]:
        store = self.store
        keys = [
            store.key_with_prefix(object_id),
            store.metadata_key_with_prefix(object_id + ".part"),
            store.metadata_key_with_prefix(object_id + ".info"),
        ]
        try:
            failures = store.service.delete_objects(store.bucket, keys, True)
        except Exception as exc:
            return [exc]
        return [
            RuntimeError(
                f"AWS S3 Error ({failure.code}) for object {failure.key}: {failure.message}"
            )
            for failure in failures or []
            if failure.code != "NoSuchKey"
        ]

    def finish_upload(self) -> None:
        """Complete the multipart upload from all uploaded parts."""
        store = self.store
        object_id, multipart_id = split_ids(self.id)
        key = store.key_with_prefix(object_id)

        parts = store.list_all_parts(self.id)
        if not parts:
            # At least one part is required, so an empty upload gets an empty part.
            etag = store.service.upload_part(
                store.bucket, key, multipart_id, 1, _bytes_reader(b"")
            )
            parts = [Part(etag=etag, part_number=1)]

        completed = [Part(etag=part.etag, part_number=part.part_number) for part in parts]
        store.service.complete_multipart_upload(store.bucket, key, multipart_id, completed)

    def concat_uploads(self, partial_uploads: Sequence[S3Upload]) -> None:
        """Make this upload the concatenation of the partial uploads."""
        has_small_part = False
        for partial in partial_uploads:
            if partial.get_info().size < self.store.min_part_size:
                has_small_part = True

        # Parts below the minimum size cannot be copied into a multipart
        # upload, so those are joined on disk instead.
        if has_small_part:
            self._concat_using_download(partial_uploads)
        else:
            self._concat_using_multipart(partial_uploads)

    def _concat_using_download(self, partial_uploads: Sequence[S3Upload]) -> None:
        store = self.store
        object_id, multipart_id = split_ids(self.id)

        file = tempfile.NamedTemporaryFile(
            mode="w+b",
            prefix=CONCAT_TEMP_FILE_PREFIX,
            dir=store.temporary_directory or None,
            delete=False,
        )
        try:
            for partial in partial_uploads:
                partial_id, _ = split_ids(partial.id)
                result = store.service.get_object(
                    store.bucket, store.key_with_prefix(partial_id)
                )
                with result:
                    if result.body is not None:
                        shutil.copyfileobj(result.body, file)
            file.flush()
            file.seek(0)
            store.service.put_object(store.bucket, store.key_with_prefix(object_id), file)
        finally:
            clean_up_temp_file(file)

        # The multipart upload is no longer needed; its removal is not waited
        # for and its outcome does not matter.
        threading.Thread(
            target=self._abort_quietly, args=(object_id, multipart_id), daemon=True
        ).start()

    def _abort_quietly(self, object_id: str, multipart_id: str) -> None:
        store = self.store
        try:
            store.service.abort_multipart_upload(
                store.bucket, store.key_with_prefix(object_id), multipart_id
            )
        except Exception:
            pass

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
            except Exception as exc:
                return exc
            return None

        partial_ids = [split_ids(partial.id)[0] for partial in partial_uploads]
        if partial_ids:
            with ThreadPoolExecutor(max_workers=len(partial_ids)) as pool:
                outcomes = list(
                    pool.map(copy, range(1, len(partial_ids) + 1), partial_ids)
                )
            errors = [err for err in outcomes if err is not None]
            if errors:
                raise MultiError(errors)

        self.finish_upload()

    def declare_length(self, length: int) -> None:
        """Set the size of an upload whose length was deferred."""
        info = self.get_info()
        info.size = length
        info.size_is_deferred = False
        self.write_info(info)


def _bytes_reader(data: bytes) -> BinaryIO:
    import io

    return io.BytesIO(data)