"""A tus data store keeping uploads as multipart uploads in an S3 bucket."""

from __future__ import annotations

import dataclasses
import tempfile
from dataclasses import dataclass
from typing import IO

from .models import (
    AwsError,
    FileInfo,
    GetObjectResult,
    Part,
    S3API,
    is_aws_error,
    new_upload_id,
    sanitize_metadata_value,
    split_ids,
)
from .part_producer import TEMP_FILE_PREFIX, clean_up_temp_file
from .upload import S3Upload

_COPY_CHUNK = 64 * 1024
_MISSING_PART_CODES = ("NoSuchKey", "NotFound", "AccessDenied")


@dataclass(eq=False)
class S3Store:
    """Stores uploads in ``bucket`` through ``service``.

    Each upload has an info object (``<id>.info``), a multipart upload for
    its data and, while a chunk smaller than ``min_part_size`` is pending,
    an incomplete-part object (``<id>.part``).
    """

    bucket: str
    service: S3API
    object_prefix: str = ""
    metadata_object_prefix: str = ""
    max_part_size: int = 5 * 1024 * 1024 * 1024
    min_part_size: int = 5 * 1024 * 1024
    preferred_part_size: int = 50 * 1024 * 1024
    max_multipart_parts: int = 10_000
    max_object_size: int = 5 * 1024 * 1024 * 1024 * 1024
    max_buffered_parts: int = 20
    temporary_directory: str = ""
    disable_content_hashes: bool = False

    def new_upload(self, info: FileInfo) -> S3Upload:
        """Create the multipart upload and the info object for a new upload."""
        if info.size > self.max_object_size:
            raise ValueError(
                f"s3store: upload size of {info.size} bytes exceeds "
                f"MaxObjectSize of {self.max_object_size} bytes"
            )

        object_id = info.id or new_upload_id()
        metadata = {
            key: sanitize_metadata_value(value)
            for key, value in (info.meta_data or {}).items()
        }
        key = self.key_with_prefix(object_id)

        try:
            multipart_id = self.service.create_multipart_upload(self.bucket, key, metadata)
        except Exception as exc:
            raise RuntimeError(
                f"s3store: unable to create multipart upload:\n{exc}"
            ) from exc

        info = dataclasses.replace(
            info,
            id=f"{object_id}+{multipart_id}",
            storage={"Type": "s3store", "Bucket": self.bucket, "Key": key},
        )
        upload = S3Upload(info.id, self)
        try:
            upload.write_info(info)
        except Exception as exc:
            raise RuntimeError(f"s3store: unable to create info file:\n{exc}") from exc
        return upload

    def get_upload(self, upload_id: str) -> S3Upload:
        """Return the upload with the given "objectId+multipartId" identifier."""
        return S3Upload(upload_id, self)

    @staticmethod
    def _as_upload(upload: object) -> S3Upload:
        if not isinstance(upload, S3Upload):
            raise TypeError(f"expected an S3Upload, got {type(upload).__name__}")
        return upload

    def as_terminatable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one that can be terminated."""
        return self._as_upload(upload)

    def as_length_declarable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one whose length can be declared later."""
        return self._as_upload(upload)

    def as_concatable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one that can be built from partial uploads."""
        return self._as_upload(upload)

    def list_all_parts(self, upload_id: str) -> list[Part]:
        """Return every part of the multipart upload, following pagination."""
        object_id, multipart_id = split_ids(upload_id)
        key = self.key_with_prefix(object_id)
        parts: list[Part] = []
        marker = 0
        while True:
            page = self.service.list_parts(
                self.bucket, key, multipart_id, part_number_marker=marker
            )
            parts.extend(page.parts or [])
            if not page.is_truncated:
                return parts
            marker = page.next_part_number_marker or 0

    def download_incomplete_part(self, upload_id: str) -> tuple[IO[bytes] | None, int]:
        """Copy the pending incomplete part to a temporary file.

        Returns the file, positioned at its start, and its size, or
        ``(None, 0)`` when there is no incomplete part.
        """
        result = self.get_incomplete_part(upload_id)
        if result is None:
            return None, 0

        with result:
            file = tempfile.NamedTemporaryFile(
                mode="w+b",
                prefix=TEMP_FILE_PREFIX,
                dir=self.temporary_directory or None,
                delete=False,
            )
            try:
                size = 0
                if result.body is not None:
                    while chunk := result.body.read(_COPY_CHUNK):
                        file.write(chunk)
                        size += len(chunk)
                if size < (result.content_length or 0):
                    raise OSError("short read of incomplete upload")
                file.flush()
                file.seek(0)
            except BaseException:
                clean_up_temp_file(file)
                raise
        return file, size

    def get_incomplete_part(self, upload_id: str) -> GetObjectResult | None:
        """Fetch the incomplete-part object, or None when there is none."""
        try:
            return self.service.get_object(
                self.bucket, self.metadata_key_with_prefix(upload_id + ".part")
            )
        except AwsError as exc:
            if any(is_aws_error(exc, code) for code in _MISSING_PART_CODES):
                return None
            raise

    def put_incomplete_part(self, upload_id: str, file: IO[bytes]) -> None:
        """Store file as the incomplete part, then remove the file."""
        try:
            self.service.put_object(
                self.bucket, self.metadata_key_with_prefix(upload_id + ".part"), file
            )
        finally:
            clean_up_temp_file(file)

    def delete_incomplete_part(self, upload_id: str) -> None:
        """Delete the incomplete-part object."""
        self.service.delete_object(
            self.bucket, self.metadata_key_with_prefix(upload_id + ".part")
        )

    def calc_optimal_part_size(self, size: int) -> int:
        """Choose a part size so that size bytes fit into the allowed parts."""
        if size <= self.preferred_part_size:
            optimal = self.preferred_part_size
        elif size <= self.preferred_part_size * self.max_multipart_parts:
            optimal = self.preferred_part_size
        elif size % self.max_multipart_parts == 0:
            optimal = size // self.max_multipart_parts
        else:
            # Rounding up only when needed keeps the result within
            # max_part_size when max_object_size == max_part_size * parts.
            optimal = size // self.max_multipart_parts + 1

        if optimal > self.max_part_size:
            raise ValueError(
                f"calcOptimalPartSize: to upload {size} bytes optimalPartSize "
                f"{optimal} must exceed MaxPartSize {self.max_part_size}"
            )
        return optimal

    @staticmethod
    def _join(prefix: str, key: str) -> str:
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return prefix + key

    def key_with_prefix(self, key: str) -> str:
        """Return the object key for upload data."""
        return self._join(self.object_prefix, key)

    def metadata_key_with_prefix(self, key: str) -> str:
        """Return the object key for .info and .part objects."""
        return self._join(self.metadata_object_prefix or self.object_prefix, key)


def new_store(bucket: str, service: S3API) -> S3Store:
    """Return a store for bucket with the default S3 limits."""
    return S3Store(bucket=bucket, service=service)