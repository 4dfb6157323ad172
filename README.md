# tusstore

Storage for resumable (tus-style) uploads on S3-compatible object stores,
plus a simple in-memory locker that keeps concurrent requests from working on
the same upload at once.

## How uploads are stored

When an upload is created, `S3Store.new_upload` puts two things in the bucket:

- an info object, `<id>.info`, holding the upload's `FileInfo` as JSON:
  size, offset, metadata and storage details;
- a multipart upload. Every chunk written becomes one or more parts.

The upload's id has the form `<object id>+<multipart id>`.

If a chunk is smaller than the store's minimum part size and is not the last
chunk of the upload, it is kept as a temporary `<id>.part` object. The next
write puts it in front of the new data.

Metadata is copied onto the multipart upload. Characters that are not allowed
in HTTP header values are replaced by `?`. The info object keeps the original
values unchanged.

`finish_upload` completes the multipart upload (an empty upload gets one empty
part). `terminate` aborts the multipart upload and deletes the content,
`.part` and `.info` objects.

`concat_uploads` joins partial uploads into one final upload. If every partial
upload is at least the minimum part size, it copies them on the server as
parts. Otherwise it downloads them and uploads them again as one object.

## Installation

```
pip install tusstore
```

The package has no runtime dependencies. Install `tusstore[test]` to run the
test suite.

## The object service

`S3Store` talks to the bucket through a `tusstore.service.S3Service`. The class
shipped with the package keeps every object and multipart upload in memory and
reports failures as `S3ServiceError` with the codes S3 uses (`NoSuchKey`,
`NoSuchUpload`, `InvalidPart`, ...). Its methods are:

- `put_object`, `get_object`, `delete_object`, `delete_objects`
- `create_multipart_upload`, `list_parts`, `upload_part`, `upload_part_copy`,
  `complete_multipart_upload`, `abort_multipart_upload`

To store uploads in a real bucket, subclass `S3Service` and override these
methods to call your S3 client, raising `S3ServiceError` with the S3 error
code when the client reports one. The store relies on these codes to tell
missing objects and finished uploads apart.

`PresigningS3Service` adds `presign_upload_part`, which builds a URL of the
form `<endpoint>/<bucket>/<key>?partNumber=...&uploadId=...&X-Amz-Expires=...`.
When a store has `disable_content_hashes` set, its service must be a
`PresigningS3Service`; each part is then sent with a plain HTTP `PUT` to that
URL, and any status other than 200 is an error.

## Usage

```python
from tusstore.fileinfo import FileInfo
from tusstore.memorylocker import MemoryLocker
from tusstore.service import S3Service
from tusstore.store import S3Store

store = S3Store("my-bucket", S3Service(), object_prefix="uploads")

upload = store.new_upload(FileInfo(size=11, meta_data={"filename": "hello.txt"}))
info = upload.get_info()

locker = MemoryLocker()
with locker.new_lock(info.id):
    written = upload.write_chunk(0, b"hello world")
    upload.finish_upload()

with store.get_upload(info.id).get_reader() as reader:
    print(reader.read())  # b'hello world'
```

`write_chunk` accepts bytes or a binary file object and returns the number of
bytes it took. `get_info` fetches the info object on first use and then
returns a copy of the cached value. `declare_length` fixes the size of an
upload created with `size_is_deferred=True`.

### Keys

`object_prefix` is put in front of every content object's key.
`metadata_object_prefix` is put in front of `.info` and `.part` keys; when it
is empty, `object_prefix` is used. A slash is added between prefix and key if
the prefix does not end with one.

### Part sizes

`S3Store.calc_optimal_part_size` uses the preferred part size when the upload
fits in the maximum number of parts with it. Otherwise it uses the smallest
size that fits. If even that would exceed the maximum part size, it raises
`ValueError`. The limits are attributes of the store; the defaults follow AWS
S3:

| attribute | default |
|---|---|
| `min_part_size` | 5 MiB |
| `preferred_part_size` | 50 MiB |
| `max_part_size` | 5 GiB |
| `max_multipart_parts` | 10000 |
| `max_object_size` | 5 TiB |
| `max_buffered_parts` | 20 |

Creating an upload larger than `max_object_size` raises `TusError`.

Incoming data is staged in temporary files (prefix `tusd-s3-tmp-`) while it is
written; up to `max_buffered_parts` of them may wait while a part is being
sent. Set `temporary_directory` to choose where they go; by default the system
temporary directory is used. The files are removed even when a write fails.

### Locking

`MemoryLocker.new_lock(upload_id)` returns a `MemoryLock`.

- `lock()` raises `FileLockedError` (HTTP 423) if the id is already locked.
- `unlock()` never fails, even if the lock is not held.
- A lock can be used as a context manager, as in the example above.

Locks live only in the locker object's memory and are lost with it.

### Errors

Errors raised by the stores and the locker derive from
`tusstore.errors.TusError`:

- `NotFoundError` (HTTP 404): the upload does not exist.
- `HTTPError`: carries `status_code`, for example 400 when reading an upload
  that has not been finished.
- `FileLockedError` (HTTP 423): the upload is locked.
- `S3ServiceError`: reported by the service, with its `code`;
  `is_service_error(err, code)` tests for one.
- `MultiError`: several errors collected during termination or concatenation,
  available as `errors`.

Invalid part sizes and malformed info documents (`FileInfo.from_json`) raise
`ValueError`.

## What this package does not do

- It does not serve the tus HTTP protocol: there is no server or request
  handler, only the storage and locking layers.
- It contains no client for a real S3 service. The bundled `S3Service` keeps
  everything in memory; connecting to a bucket means subclassing it.
- It exposes no metrics.