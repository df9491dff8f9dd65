import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional

from werkzeug.exceptions import ClientDisconnected
from werkzeug.http import parse_options_header
from werkzeug.sansio.multipart import (
    Data,
    Epilogue,
    Field,
    File,
    MultipartDecoder,
    NeedData,
)

from .errors import (
    InvalidRequestError,
    NotFoundError,
    UploadIOError,
    UploadServerError,
    UploadTooLargeError,
)
from .logs import sanitize_log_value
from .storage import (
    PathLike,
    StoredFile,
    allocate_filename,
    relative_url_path,
    resolve_path,
    temp_upload_name,
)

CHUNK_SIZE_BYTES = 64 * 1024  # read size for request bodies
MAX_FORM_PARTS = 1000

_default_logger = logging.getLogger("uploadserver.lifecycle")


@dataclass(frozen=True)
class UploadResult:
    stored: StoredFile
    ignored_parts: int = 0


def _chunk_iter(read: Callable[[int], bytes], size: int) -> Iterator[Optional[bytes]]:
    while True:
        data = read(size)
        if not data:
            break
        yield data
    # None tells the decoder the body is complete
    yield None


class _PartWriter:
    """Streams one file part to a hidden temporary file beside its destination.

    Nothing appears under the final name until ``commit``. Randomized names
    are published with a hard link, which fails if the name is taken, so an
    existing file is never replaced. Kept original names are moved over the
    destination.
    """

    def __init__(self, directory: Path, filename: str, keep_original: bool) -> None:
        self.filename = filename
        self.final_path = directory / filename
        self.write_path = directory / temp_upload_name()
        self.keep_original = keep_original
        self.written = 0
        self._handle: Optional[BinaryIO] = None
        self._created = False

    def open(self) -> None:
        self._handle = self.write_path.open("xb")
        self._created = True

    def write(self, data: bytes) -> None:
        if self._handle is None:
            raise UploadIOError("Upload destination is closed", detail=self.filename)
        self._handle.write(data)
        self.written += len(data)

    def finish(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            handle.close()

    def commit(self) -> None:
        self.finish()
        if self.keep_original:
            os.replace(self.write_path, self.final_path)
        else:
            try:
                os.link(self.write_path, self.final_path)
            except FileExistsError as error:
                raise UploadIOError(
                    "Allocated filename already exists", detail=self.filename
                ) from error
            self.write_path.unlink()
        self._created = False

    def discard(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            try:
                handle.close()
            except OSError:
                pass
        if self._created:
            self.write_path.unlink(missing_ok=True)


def _multipart_boundary(content_type: Optional[str]) -> bytes:
    mimetype, options = parse_options_header(content_type or "")
    boundary = options.get("boundary")
    if mimetype != "multipart/form-data" or not boundary:
        raise InvalidRequestError("Expected a multipart/form-data request with a boundary")
    try:
        return boundary.encode("latin-1")
    except UnicodeEncodeError as error:
        raise InvalidRequestError("Invalid multipart boundary") from error


def handle_upload(
    stream: BinaryIO,
    content_type: Optional[str],
    root: PathLike,
    directory: str = "",
    keep_original: bool = False,
    max_upload_bytes: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> UploadResult:
    """Store the first file part of a multipart body under *root*/*directory*.

    The body is consumed in ``CHUNK_SIZE_BYTES`` reads and every chunk of
    file data is written before the next read, so memory use does not depend
    on the upload size. Later file parts are drained and counted in
    ``ignored_parts``. Any failure removes what was written so far.
    """

    log = logger or _default_logger
    boundary = _multipart_boundary(content_type)
    target_dir = resolve_path(root, directory, must_exist=True)
    if not target_dir.is_dir():
        raise NotFoundError("Upload directory not found")

    decoder = MultipartDecoder(boundary, max_parts=MAX_FORM_PARTS)
    writer: Optional[_PartWriter] = None
    receiving = False
    completed = False
    ignored_parts = 0

    try:
        for chunk in _chunk_iter(stream.read, CHUNK_SIZE_BYTES):
            decoder.receive_data(chunk)
            event = decoder.next_event()
            while not isinstance(event, (Epilogue, NeedData)):
                if isinstance(event, File):
                    if writer is None:
                        filename = allocate_filename(event.filename, keep_original)
                        writer = _PartWriter(target_dir, filename, keep_original)
                        writer.open()
                        receiving = True
                        log.debug(
                            "upload_started field=%s filename=%s stored_as=%s",
                            sanitize_log_value(event.name),
                            sanitize_log_value(event.filename),
                            sanitize_log_value(filename),
                        )
                    else:
                        ignored_parts += 1
                        log.warning(
                            "upload_part_ignored field=%s filename=%s",
                            sanitize_log_value(event.name),
                            sanitize_log_value(event.filename),
                        )
                elif isinstance(event, Field):
                    receiving = False
                elif isinstance(event, Data) and receiving and writer is not None:
                    writer.write(event.data)
                    if max_upload_bytes is not None and writer.written > max_upload_bytes:
                        raise UploadTooLargeError(
                            "Upload exceeds the configured size limit",
                            detail=f"limit={max_upload_bytes}",
                        )
                    if not event.more_data:
                        writer.finish()
                        receiving = False
                event = decoder.next_event()

        if writer is None:
            raise InvalidRequestError("No file part in request")

        writer.commit()
        completed = True
    except UploadServerError:
        raise
    except ClientDisconnected as error:
        log.warning("upload_client_disconnected written=%d", writer.written if writer else 0)
        raise UploadIOError("Client disconnected during upload") from error
    except ValueError as error:
        # MultipartDecoder reports malformed or truncated bodies as ValueError
        if writer is None:
            raise InvalidRequestError("Malformed multipart body", detail=str(error)) from error
        raise UploadIOError("Upload body ended unexpectedly", detail=str(error)) from error
    except OSError as error:
        raise UploadIOError("Failed to write upload", detail=str(error)) from error
    finally:
        if writer is not None and not completed:
            writer.discard()
            log.warning(
                "upload_discarded filename=%s written=%d",
                sanitize_log_value(writer.filename),
                writer.written,
            )

    stored = StoredFile(
        path=writer.final_path,
        filename=writer.filename,
        size=writer.written,
        relative_path=relative_url_path(root, writer.final_path),
    )
    log.info(
        "file_uploaded filename=%s size=%d ignored_parts=%d",
        sanitize_log_value(stored.relative_path),
        stored.size,
        ignored_parts,
    )
    return UploadResult(stored=stored, ignored_parts=ignored_parts)
