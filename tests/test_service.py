import io
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from tusstore.errors import S3ServiceError, is_service_error
from tusstore.service import (
    DeleteError,
    ListPartsResult,
    ObjectResult,
    Part,
    PresigningS3Service,
    S3Service,
)


@pytest.fixture
def service():
    return S3Service()


def _multipart(service, parts):
    upload_id = service.create_multipart_upload("bucket", "uploadId", {"foo": "hello"})
    for number, data in enumerate(parts, start=1):
        service.upload_part("bucket", "uploadId", upload_id, number, data)
    return upload_id


def test_put_and_get_round_trip(service):
    service.put_object("bucket", "uploadId.info", b"hello world")
    with service.get_object("bucket", "uploadId.info") as result:
        assert result.read() == b"hello world"
        assert result.content_length == len(b"hello world")


def test_put_accepts_file_objects(service):
    service.put_object("bucket", "k", io.BytesIO(b"stream"), content_length=6)
    assert service.get_object("bucket", "k").read() == b"stream"


def test_put_with_wrong_content_length_fails(service):
    with pytest.raises(S3ServiceError):
        service.put_object("bucket", "k", b"abc", content_length=10)
    with pytest.raises(S3ServiceError) as info:
        service.get_object("bucket", "k")
    assert is_service_error(info.value, "NoSuchKey")


def test_get_missing_object_raises_no_such_key(service):
    with pytest.raises(S3ServiceError) as info:
        service.get_object("bucket", "missing")
    assert info.value.code == "NoSuchKey"


def test_objects_are_separated_by_bucket(service):
    service.put_object("bucket", "k", b"one")
    with pytest.raises(S3ServiceError) as info:
        service.get_object("other", "k")
    assert is_service_error(info.value, "NoSuchKey")


def test_multipart_upload_round_trip(service):
    upload_id = _multipart(service, [b"1234", b"5678", b"9"])
    listing = service.list_parts("bucket", "uploadId", upload_id)
    assert [part.size for part in listing.parts] == [4, 4, 1]
    assert [part.part_number for part in listing.parts] == [1, 2, 3]
    assert listing.is_truncated is False

    service.complete_multipart_upload("bucket", "uploadId", upload_id, listing.parts)
    result = service.get_object("bucket", "uploadId")
    assert result.read() == b"123456789"
    assert result.metadata == {"foo": "hello"}

    with pytest.raises(S3ServiceError) as info:
        service.list_parts("bucket", "uploadId", upload_id)
    assert info.value.code == "NoSuchUpload"


def test_upload_part_etag_matches_listing(service):
    upload_id = service.create_multipart_upload("bucket", "uploadId")
    etag = service.upload_part("bucket", "uploadId", upload_id, 1, b"data")
    listing = service.list_parts("bucket", "uploadId", upload_id)
    assert listing.parts == [Part(part_number=1, etag=etag, size=4)]


def test_list_parts_pagination(service):
    upload_id = _multipart(service, [b"a", b"bb", b"ccc"])
    first = service.list_parts("bucket", "uploadId", upload_id, 0, 2)
    assert [part.part_number for part in first.parts] == [1, 2]
    assert first.is_truncated is True
    assert first.next_part_number_marker == 2

    second = service.list_parts("bucket", "uploadId", upload_id, first.next_part_number_marker, 2)
    assert [part.part_number for part in second.parts] == [3]
    assert second.is_truncated is False


def test_list_parts_with_zero_max_parts_checks_existence(service):
    upload_id = _multipart(service, [b"x"])
    listing = service.list_parts("bucket", "uploadId", upload_id, max_parts=0)
    assert listing.parts == []
    with pytest.raises(S3ServiceError) as info:
        service.list_parts("bucket", "uploadId", "unknown", max_parts=0)
    assert is_service_error(info.value, "NoSuchUpload")


def test_list_parts_requires_matching_key(service):
    upload_id = _multipart(service, [b"x"])
    with pytest.raises(S3ServiceError) as info:
        service.list_parts("bucket", "otherKey", upload_id)
    assert is_service_error(info.value, "NoSuchUpload")


def test_abort_multipart_upload(service):
    upload_id = _multipart(service, [b"x"])
    service.abort_multipart_upload("bucket", "uploadId", upload_id)
    with pytest.raises(S3ServiceError) as info:
        service.list_parts("bucket", "uploadId", upload_id)
    assert is_service_error(info.value, "NoSuchUpload")
    with pytest.raises(S3ServiceError) as again:
        service.abort_multipart_upload("bucket", "uploadId", upload_id)
    assert is_service_error(again.value, "NoSuchUpload")


def test_upload_part_copy(service):
    service.put_object("bucket", "aaa", b"aaa")
    service.put_object("bucket", "bbb", b"bbbb")
    upload_id = service.create_multipart_upload("bucket", "uploadId")
    service.upload_part_copy("bucket", "uploadId", upload_id, 1, "bucket/aaa")
    service.upload_part_copy("bucket", "uploadId", upload_id, 2, "bucket/bbb")
    parts = service.list_parts("bucket", "uploadId", upload_id).parts
    service.complete_multipart_upload("bucket", "uploadId", upload_id, parts)
    assert service.get_object("bucket", "uploadId").read() == b"aaabbbb"


def test_upload_part_copy_of_missing_source(service):
    upload_id = service.create_multipart_upload("bucket", "uploadId")
    with pytest.raises(S3ServiceError) as info:
        service.upload_part_copy("bucket", "uploadId", upload_id, 1, "bucket/ccc")
    assert is_service_error(info.value, "NoSuchKey")


def test_upload_part_rejects_invalid_part_numbers(service):
    upload_id = service.create_multipart_upload("bucket", "uploadId")
    with pytest.raises(S3ServiceError):
        service.upload_part("bucket", "uploadId", upload_id, 0, b"x")
    with pytest.raises(S3ServiceError):
        service.upload_part("bucket", "uploadId", upload_id, 10001, b"x")
    assert service.list_parts("bucket", "uploadId", upload_id).parts == []


def test_complete_rejects_wrong_etag(service):
    upload_id = _multipart(service, [b"x"])
    with pytest.raises(S3ServiceError):
        service.complete_multipart_upload(
            "bucket", "uploadId", upload_id, [Part(part_number=1, etag="etag")]
        )
    assert len(service.list_parts("bucket", "uploadId", upload_id).parts) == 1


def test_complete_rejects_descending_parts(service):
    upload_id = _multipart(service, [b"x", b"y"])
    parts = service.list_parts("bucket", "uploadId", upload_id).parts
    with pytest.raises(S3ServiceError):
        service.complete_multipart_upload("bucket", "uploadId", upload_id, parts[::-1])
    with pytest.raises(S3ServiceError) as info:
        service.get_object("bucket", "uploadId")
    assert is_service_error(info.value, "NoSuchKey")


def test_complete_without_parts_fails(service):
    upload_id = service.create_multipart_upload("bucket", "uploadId")
    with pytest.raises(S3ServiceError):
        service.complete_multipart_upload("bucket", "uploadId", upload_id, [])
    assert service.list_parts("bucket", "uploadId", upload_id).parts == []


def test_delete_object(service):
    service.put_object("bucket", "uploadId.part", b"x")
    service.delete_object("bucket", "uploadId.part")
    service.delete_object("bucket", "uploadId.part")
    with pytest.raises(S3ServiceError) as info:
        service.get_object("bucket", "uploadId.part")
    assert is_service_error(info.value, "NoSuchKey")


def test_delete_objects_quiet(service):
    service.put_object("bucket", "uploadId", b"x")
    service.put_object("bucket", "uploadId.info", b"{}")
    errors = service.delete_objects(
        "bucket", ["uploadId", "uploadId.part", "uploadId.info"], quiet=True
    )
    assert errors == []
    with pytest.raises(S3ServiceError):
        service.get_object("bucket", "uploadId.info")


def test_delete_objects_verbose_reports_missing(service):
    service.put_object("bucket", "uploadId", b"x")
    errors = service.delete_objects("bucket", ["uploadId", "uploadId.part"], quiet=False)
    assert [(err.key, err.code) for err in errors] == [("uploadId.part", "NoSuchKey")]
    assert all(isinstance(err, DeleteError) for err in errors)


def test_object_result_read_and_close():
    result = ObjectResult(body=io.BytesIO(b"0123456789"), content_length=10)
    assert result.read() == b"0123456789"
    result.close()
    assert result.body.closed


def test_list_parts_result_defaults():
    result = ListPartsResult()
    assert (result.parts, result.is_truncated, result.next_part_number_marker) == ([], False, None)


def test_presign_upload_part():
    service = PresigningS3Service("http://localhost:9000/")
    url = service.presign_upload_part("bucket", "my/uploaded/files/uploadId", "multipartId", 3,
                                      timedelta(minutes=15))
    parts = urlsplit(url)
    assert parts.netloc == "localhost:9000"
    assert parts.path == "/bucket/my/uploaded/files/uploadId"
    query = parse_qs(parts.query)
    assert query["partNumber"] == ["3"]
    assert query["uploadId"] == ["multipartId"]
    assert query["X-Amz-Expires"] == [str(15 * 60)]


def test_presign_rejects_bad_expiry():
    service = PresigningS3Service()
    with pytest.raises(ValueError):
        service.presign_upload_part("bucket", "key", "multipartId", 1, timedelta(days=8))
    with pytest.raises(ValueError):
        service.presign_upload_part("bucket", "key", "multipartId", 1, 0)


def test_presigning_service_stores_objects():
    service = PresigningS3Service()
    service.put_object("bucket", "k", b"value")
    assert service.get_object("bucket", "k").read() == b"value"