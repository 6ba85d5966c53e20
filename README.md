# tusbucket

A storage backend for tus resumable uploads that keeps their data in an
S3-compatible bucket.

Each upload is stored as:

- an `<id>.info` object that holds a JSON description of the upload
  (size, offset, metadata, storage location);
- an S3 multipart upload that receives one part for every chunk large
  enough to be a part;
- an optional `<id>.part` object that holds trailing bytes still too
  small to be a part. They are put in front of the next chunk.

When an upload is finished, the multipart upload is completed and the
whole file is stored in the bucket under its key. Terminating an upload
aborts the multipart upload and deletes the file, `.part` and `.info`
objects.

## Installation

```
pip install tusbucket
```

The package has no runtime dependencies. To run the tests, install the
`test` extra and run `pytest`.

## What it does not do

The package is only the storage layer. It does not speak HTTP: there is
no tus request handler or server. It also has no S3 client of its own,
so you supply the object that talks to the bucket (see below).

## Connecting a bucket

The store talks to storage through an object that follows the
`tusbucket.models.S3API` protocol. It needs the methods `put_object`,
`list_parts`, `upload_part`, `get_object`, `create_multipart_upload`,
`abort_multipart_upload`, `delete_object`, `delete_objects`,
`complete_multipart_upload` and `upload_part_copy`, built on whatever
client you use. A failure that the service reports must be raised as
`tusbucket.models.AwsError` with the service's error code, for example
`NoSuchKey`, `NoSuchUpload`, `NotFound` or `AccessDenied`. The store
decides what to do by looking at these codes.

## Usage

```python
import io

from tusbucket.models import FileInfo, NotFoundError
from tusbucket.store import new_store

store = new_store("uploads-bucket", my_s3_api)
store.object_prefix = "my/uploaded/files"

upload = store.new_upload(FileInfo(size=11, meta_data={"filename": "hello.txt"}))
written = upload.write_chunk(0, io.BytesIO(b"hello world"))
upload.finish_upload()

again = store.get_upload(upload.get_info().id)
try:
    data = again.get_reader().read()
except NotFoundError:
    data = None
```

Upload ids have the form `<object id>+<multipart upload id>`.
`tusbucket.models.split_ids` splits an id into its two halves. If
`FileInfo.id` is empty, `new_upload` makes a random object id with
`new_upload_id`.

`write_chunk(offset, src)` returns the number of bytes it took from
`src`. `get_info` and `get_reader` raise `NotFoundError` when the upload
does not exist. `get_reader` raises `RuntimeError` when the upload
exists but is not finished yet. `new_upload` raises `ValueError` when
the size is larger than `max_object_size`.

### Settings

`new_store` returns an `S3Store` with the defaults that the S3 service
expects:

| attribute                | default          |
|--------------------------|------------------|
| `min_part_size`          | 5 MiB            |
| `preferred_part_size`    | 50 MiB           |
| `max_part_size`          | 5 GiB            |
| `max_multipart_parts`    | 10 000           |
| `max_object_size`        | 5 TiB            |
| `max_buffered_parts`     | 20               |
| `temporary_directory`    | system temp dir  |
| `disable_content_hashes` | `False`          |

Set `metadata_object_prefix` to keep the `.info` and `.part` objects
apart from the uploaded files. If it is unset, `object_prefix` is used
for them as well.

The metadata attached to the multipart upload may contain only ASCII
characters. Any other character, and any CR or LF, is replaced with
`?` (`sanitize_metadata_value`). The `.info` object keeps the original
values, so `get_info` always returns the metadata unchanged.

When `disable_content_hashes` is true, parts are sent with an HTTP `PUT`
to a presigned URL. The service object must then also provide
`presign_upload_part(bucket, key, upload_id, part_number, expires_in)`,
which returns that URL.

### Extensions

- **Termination**: `store.as_terminatable_upload(upload).terminate()`.
  Failures are collected into a `MultiError`.
- **Deferred length**: `store.as_length_declarable_upload(upload).declare_length(n)`
- **Concatenation**: `store.as_concatable_upload(final).concat_uploads([a, b, c])`.
  If every partial upload is at least `min_part_size`, the parts are
  copied on the server side. Otherwise they are downloaded, joined on
  disk and uploaded as one object.

Incoming chunks are written to temporary files before they are sent
(see `tusbucket.part_producer.PartProducer`). The disk that holds
`temporary_directory` needs room for up to `max_buffered_parts` parts
at once. The temporary files are removed as soon as they have been
used, and also when an error occurs.