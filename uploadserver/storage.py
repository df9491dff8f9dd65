import os
import re
import secrets
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional, Union

from .errors import InvalidNameError, NotFoundError, PathTraversalError, PermissionDeniedError

MAX_FILENAME_LENGTH = 255  # bytes, the common filesystem limit
# 8 random bytes -> 16 hex characters (64 bits of entropy per name)
RANDOM_TOKEN_BYTES = 8
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f]")
# in-flight uploads, hidden from listings until published
TEMP_UPLOAD_PREFIX = ".upload-"
TEMP_UPLOAD_SUFFIX = ".part"

PathLike = Union[str, Path]


@dataclass(frozen=True)
class StoredFile:
    """A completed upload on disk."""

    path: Path
    filename: str
    size: int
    relative_path: str


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    is_dir: bool
    size: Optional[int]
    modified: float


def _is_within(root: Path, candidate: Path) -> bool:
    return candidate == root or root in candidate.parents


def resolve_path(root: PathLike, request_path: str, must_exist: bool = False) -> Path:
    """Map *request_path* to an absolute path confined to *root*.

    Every ``..`` segment is rejected outright, even when the collapsed path
    would still land inside the root. Symlinks are followed and the final
    target must still be the root or one of its descendants.
    """

    root_path = Path(root).resolve()
    raw = request_path or ""
    if "\x00" in raw:
        raise PathTraversalError("Path contains invalid characters")

    segments = [segment for segment in raw.replace("\\", "/").split("/") if segment not in ("", ".")]
    if any(segment == ".." for segment in segments):
        raise PathTraversalError("Path traversal is not allowed")

    candidate = root_path.joinpath(*segments) if segments else root_path
    try:
        resolved = candidate.resolve()
    except (OSError, RuntimeError) as error:
        # RuntimeError covers symlink loops on older interpreters
        raise NotFoundError("Path could not be resolved", detail=str(error)) from error

    if not _is_within(root_path, resolved):
        raise PathTraversalError("Path resolves outside the serving root")

    if must_exist and not resolved.exists():
        raise NotFoundError("Path not found")

    return resolved


def relative_url_path(root: PathLike, target: PathLike) -> str:
    """Return the POSIX path of *target* relative to *root* ("" for the root)."""

    relative = Path(target).resolve().relative_to(Path(root).resolve())
    text = PurePosixPath(*relative.parts).as_posix() if relative.parts else ""
    return text


def _bare_name(desired_name: str) -> str:
    name = (desired_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    return name.strip()


def _encoded_length(value: str) -> int:
    return len(value.encode("utf-8", errors="surrogateescape"))


def validate_filename(filename: str) -> None:
    """Reject names that cannot be written safely as a single path component."""

    if not filename:
        raise InvalidNameError("Filename cannot be empty")
    if filename in {".", ".."}:
        raise InvalidNameError("Filename cannot be a relative directory reference")
    if _CONTROL_CHAR_PATTERN.search(filename):
        raise InvalidNameError("Filename contains invalid characters")
    if _encoded_length(filename) > MAX_FILENAME_LENGTH:
        raise InvalidNameError(
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} bytes"
        )


def _truncate_to_bytes(value: str, limit: int) -> str:
    if limit <= 0:
        return ""
    encoded = value.encode("utf-8", errors="surrogateescape")
    if len(encoded) <= limit:
        return value
    return encoded[:limit].decode("utf-8", errors="ignore")


def allocate_filename(desired_name: str, keep_original: bool = False) -> str:
    """Return the on-disk name for an upload of *desired_name*.

    Directory components are always stripped. With *keep_original* the bare
    name is returned as-is, so a later upload of the same name replaces the
    earlier file. Otherwise a random token is inserted between stem and
    extension (``report.pdf`` -> ``report-<token>.pdf``).
    """

    filename = _bare_name(desired_name)
    validate_filename(filename)

    if keep_original:
        return filename

    stem, extension = os.path.splitext(filename)
    token = secrets.token_hex(RANDOM_TOKEN_BYTES)
    budget = MAX_FILENAME_LENGTH - _encoded_length(extension) - len(token) - 1
    if budget < 1:
        # Extension alone is too long to keep alongside the token.
        stem, extension = filename, ""
        budget = MAX_FILENAME_LENGTH - len(token) - 1
    stem = _truncate_to_bytes(stem, budget)
    return f"{stem}-{token}{extension}"


def temp_upload_name() -> str:
    return f"{TEMP_UPLOAD_PREFIX}{secrets.token_hex(RANDOM_TOKEN_BYTES)}{TEMP_UPLOAD_SUFFIX}"


def is_temp_upload_name(name: str) -> bool:
    return name.startswith(TEMP_UPLOAD_PREFIX) and name.endswith(TEMP_UPLOAD_SUFFIX)


def list_directory(directory: PathLike) -> List[DirectoryEntry]:
    """List *directory* as entries sorted by name."""

    directory_path = Path(directory)
    if not directory_path.is_dir():
        raise NotFoundError("Directory not found")

    entries: List[DirectoryEntry] = []
    try:
        iterator = os.scandir(directory_path)
    except PermissionError as error:
        raise PermissionDeniedError("Directory is not readable") from error
    with iterator:
        for item in iterator:
            if is_temp_upload_name(item.name):
                continue
            try:
                is_dir = item.is_dir()
                stat_result = item.stat()
            except OSError:
                # Dangling symlinks and entries removed mid-scan
                continue
            entries.append(
                DirectoryEntry(
                    name=item.name,
                    is_dir=is_dir,
                    size=None if is_dir else stat_result.st_size,
                    modified=stat_result.st_mtime,
                )
            )
    entries.sort(key=lambda entry: entry.name)
    return entries
