import io

import pytest

from tusbucket.models import (
    AwsError,
    FileInfo,
    GetObjectResult,
    MultiError,
    NotFoundError,
    is_aws_error,
    new_upload_id,
    sanitize_metadata_value,
    split_ids,
)


def test_to_json_with_sanitizable_metadata():
    info = FileInfo(
        id="uploadId+multipartId",
        size=500,
        meta_data={"foo": "hello", "bar": "menü\r\nhi"},
        storage={"Type": "s3store", "Bucket": "bucket", "Key": "uploadId"},
    )
    expected = (
        '{"ID":"uploadId+multipartId","Size":500,"SizeIsDeferred":false,"Offset":0,'
        '"MetaData":{"bar":"menü\\r\\nhi","foo":"hello"},"IsPartial":false,'
        '"IsFinal":false,"PartialUploads":null,'
        '"Storage":{"Bucket":"bucket","Key":"uploadId","Type":"s3store"}}'
    ).encode("utf-8")
    encoded = info.to_json()
    assert encoded == expected
    assert len(encoded) == 241


def test_to_json_with_prefixed_key():
    info = FileInfo(
        id="uploadId+multipartId",
        size=500,
        meta_data={"foo": "hello", "bar": "menü"},
        storage={
            "Type": "s3store",
            "Bucket": "bucket",
            "Key": "my/uploaded/files/uploadId",
        },
    )
    encoded = info.to_json()
    assert encoded == (
        '{"ID":"uploadId+multipartId","Size":500,"SizeIsDeferred":false,"Offset":0,'
        '"MetaData":{"bar":"menü","foo":"hello"},"IsPartial":false,"IsFinal":false,'
        '"PartialUploads":null,'
        '"Storage":{"Bucket":"bucket","Key":"my/uploaded/files/uploadId","Type":"s3store"}}'
    ).encode("utf-8")
    assert len(encoded) == 253


def test_to_json_empty_upload_has_null_metadata():
    info = FileInfo(
        id="uploadId+multipartId",
        size=0,
        storage={"Type": "s3store", "Bucket": "bucket", "Key": "uploadId"},
    )
    encoded = info.to_json()
    assert encoded == (
        b'{"ID":"uploadId+multipartId","Size":0,"SizeIsDeferred":false,"Offset":0,'
        b'"MetaData":null,"IsPartial":false,"IsFinal":false,"PartialUploads":null,'
        b'"Storage":{"Bucket":"bucket","Key":"uploadId","Type":"s3store"}}'
    )
    assert len(encoded) == 208


def test_to_json_keeps_empty_metadata_map():
    info = FileInfo(
        id="uploadId+multipartId",
        size=500,
        meta_data={},
        storage={"Bucket": "bucket", "Key": "uploadId", "Type": "s3store"},
    )
    encoded = info.to_json()
    assert b'"MetaData":{}' in encoded
    assert len(encoded) == 208


def test_to_json_escapes_html_characters():
    info = FileInfo(id="a<b>&c")
    assert b'"ID":"a\\u003cb\\u003e\\u0026c"' in info.to_json()


def test_from_json_reads_info_object():
    data = (
        '{"ID":"uploadId+multipartId","Size":500,"Offset":0,'
        '"MetaData":{"bar":"menü","foo":"hello"},"IsPartial":false,"IsFinal":false,'
        '"PartialUploads":null,'
        '"Storage":{"Bucket":"bucket","Key":"my/uploaded/files/uploadId","Type":"s3store"}}'
    ).encode("utf-8")
    info = FileInfo.from_json(data)
    assert info.id == "uploadId+multipartId"
    assert info.size == 500
    assert info.size_is_deferred is False
    assert info.meta_data == {"foo": "hello", "bar": "menü"}
    assert info.storage["Type"] == "s3store"
    assert info.storage["Bucket"] == "bucket"
    assert info.storage["Key"] == "my/uploaded/files/uploadId"
    assert info.partial_uploads is None


def test_from_json_deferred_size():
    info = FileInfo.from_json(
        b'{"ID":"uploadId+multipartId","Size":0,"SizeIsDeferred":true,"Offset":0,'
        b'"MetaData":{},"IsPartial":false,"IsFinal":false,"PartialUploads":null,'
        b'"Storage":null}'
    )
    assert info.size_is_deferred is True
    assert info.meta_data == {}
    assert info.storage is None


def test_json_round_trip():
    info = FileInfo(
        id="x+y",
        size=42,
        size_is_deferred=True,
        offset=7,
        meta_data={"name": "Menü"},
        is_partial=True,
        partial_uploads=["a", "b"],
        storage={"Type": "s3store"},
    )
    assert FileInfo.from_json(info.to_json()) == info


def test_split_ids():
    assert split_ids("uploadId+multipartId") == ("uploadId", "multipartId")
    assert split_ids("a+b+c") == ("a", "b+c")
    assert split_ids("noplus") == ("", "")


@pytest.mark.parametrize(
    "value, expected",
    [("hello", "hello"), ("menü\r\nhi", "men???hi"), ("menü", "men?")],
)
def test_sanitize_metadata_value(value, expected):
    assert sanitize_metadata_value(value) == expected


def test_new_upload_id_is_unique_and_has_no_separator():
    ids = {new_upload_id() for _ in range(50)}
    assert len(ids) == 50
    assert all("+" not in value and value for value in ids)


def test_is_aws_error():
    err = AwsError("NoSuchKey", "The specified key does not exist.")
    assert is_aws_error(err, "NoSuchKey")
    assert not is_aws_error(err, "NoSuchUpload")
    assert not is_aws_error(ValueError("NoSuchKey"), "NoSuchKey")
    assert not is_aws_error(None, "NoSuchKey")


def test_multi_error_message():
    err = MultiError([Exception("AWS S3 Error (hello) for object uploadId: it's me.")])
    assert str(err) == (
        "Multiple errors occurred:\n\tAWS S3 Error (hello) for object uploadId: it's me.\n"
    )
    assert len(err.errors) == 1


def test_not_found_error_message():
    err = NotFoundError()
    assert "not found" in str(err)
    with pytest.raises(NotFoundError, match="not found"):
        raise err


def test_get_object_result_closes_body():
    body = io.BytesIO(b"0123456789")
    with GetObjectResult(body=body, content_length=10) as result:
        assert result.body.read() == b"0123456789"
    assert body.closed