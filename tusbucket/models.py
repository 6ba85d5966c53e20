"""Data types, errors and helpers shared by the S3 upload store."""

from __future__ import annotations

import json
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Protocol

# Matches every character outside the ASCII range as well as CR and LF,
# neither of which may appear in an HTTP header value.
_NON_ASCII = re.compile(r"[^\x00-\x7F]|[\r\n]")

# Characters that the info-object encoding escapes even inside strings.
_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}
_JSON_ESCAPE_RE = re.compile("[<>&\u2028\u2029]")


class NotFoundError(Exception):
    """Raised when an upload does not exist."""

    def __init__(self, message: str = "upload not found") -> None:
        super().__init__(message)


class AwsError(Exception):
    """An error reported by the S3 service, identified by its code."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class MultiError(Exception):
    """Several errors that happened during one operation."""

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = list(errors)
        text = "".join(f"\t{err}\n" for err in self.errors)
        super().__init__(f"Multiple errors occurred:\n{text}")


@dataclass
class FileInfo:
    """Everything known about an upload, stored as the .info object."""

    id: str = ""
    size: int = 0
    size_is_deferred: bool = False
    offset: int = 0
    meta_data: dict[str, str] | None = None
    is_partial: bool = False
    is_final: bool = False
    partial_uploads: list[str] | None = None
    storage: dict[str, str] | None = None

    def to_json(self) -> bytes:
        """Encode as compact JSON with sorted map keys."""

        def sorted_map(mapping: dict[str, str] | None) -> dict[str, str] | None:
            return None if mapping is None else dict(sorted(mapping.items()))

        document = {
            "ID": self.id,
            "Size": self.size,
            "SizeIsDeferred": self.size_is_deferred,
            "Offset": self.offset,
            "MetaData": sorted_map(self.meta_data),
            "IsPartial": self.is_partial,
            "IsFinal": self.is_final,
            "PartialUploads": self.partial_uploads,
            "Storage": sorted_map(self.storage),
        }
        text = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        text = _JSON_ESCAPE_RE.sub(lambda m: _JSON_ESCAPES[m.group(0)], text)
        return text.encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> FileInfo:
        """Decode an info object; missing fields keep their defaults."""
        document: dict[str, Any] = json.loads(data)
        partial = document.get("PartialUploads")
        meta = document.get("MetaData")
        storage = document.get("Storage")
        return cls(
            id=document.get("ID") or "",
            size=int(document.get("Size") or 0),
            size_is_deferred=bool(document.get("SizeIsDeferred", False)),
            offset=int(document.get("Offset") or 0),
            meta_data=None if meta is None else dict(meta),
            is_partial=bool(document.get("IsPartial", False)),
            is_final=bool(document.get("IsFinal", False)),
            partial_uploads=None if partial is None else list(partial),
            storage=None if storage is None else dict(storage),
        )


@dataclass
class Part:
    """One part of a multipart upload."""

    size: int | None = None
    etag: str | None = None
    part_number: int | None = None


@dataclass
class ListPartsResult:
    """One page of parts returned by the service."""

    parts: list[Part] = field(default_factory=list)
    is_truncated: bool = False
    next_part_number_marker: int | None = None


@dataclass
class GetObjectResult:
    """An object fetched from the bucket, with its body as a binary stream."""

    body: BinaryIO | None = None
    content_length: int | None = None

    def close(self) -> None:
        if self.body is not None:
            self.body.close()

    def __enter__(self) -> GetObjectResult:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class DeleteError:
    """A per-object failure reported by a bulk delete."""

    code: str
    key: str
    message: str


class S3API(Protocol):
    """The subset of the S3 service the store talks to.

    Implementations raise AwsError for failures reported by the service.
    """

    def put_object(
        self, bucket: str, key: str, body: BinaryIO, content_length: int | None = None
    ) -> None:
        """Store body under key."""

    def list_parts(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number_marker: int | None = None,
        max_parts: int | None = None,
    ) -> ListPartsResult:
        """Return one page of the parts of a multipart upload."""

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: BinaryIO
    ) -> str | None:
        """Upload one part and return its ETag."""

    def get_object(self, bucket: str, key: str) -> GetObjectResult:
        """Fetch an object."""

    def create_multipart_upload(
        self, bucket: str, key: str, metadata: dict[str, str]
    ) -> str:
        """Start a multipart upload and return its identifier."""

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""

    def delete_object(self, bucket: str, key: str) -> None:
        """Delete one object."""

    def delete_objects(
        self, bucket: str, keys: list[str], quiet: bool = True
    ) -> list[DeleteError]:
        """Delete several objects and return the per-object failures."""

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[Part]
    ) -> None:
        """Assemble the listed parts into the final object."""

    def upload_part_copy(
        self, bucket: str, key: str, upload_id: str, part_number: int, copy_source: str
    ) -> None:
        """Copy an existing object into a part of a multipart upload."""


def is_aws_error(err: BaseException | None, code: str) -> bool:
    """Tell whether err is a service error with the given code."""
    return isinstance(err, AwsError) and err.code == code


def split_ids(upload_id: str) -> tuple[str, str]:
    """Split "objectId+multipartId"; both are empty when there is no "+"."""
    object_id, sep, multipart_id = upload_id.partition("+")
    if not sep:
        return "", ""
    return object_id, multipart_id


def new_upload_id() -> str:
    """Return a fresh random upload identifier."""
    return secrets.token_hex(16)


def sanitize_metadata_value(value: str) -> str:
    """Replace non-ASCII characters, CR and LF by question marks."""
    return _NON_ASCII.sub("?", value)