"""
Key Sanitizer and Validator

Every key that reaches the store passes through here first. Two
stages, kept separate so each has one job:

- sanitize_path(): cosmetic and idempotent. NFC normalization,
  duplicate-slash collapse, leading-slash strip, trailing slash kept
  only for folders. It never rewrites "..": silently stripping
  traversal would turn a hostile key into a different valid one.
- validate_key(): rejects. Dot segments (also percent-encoded),
  control characters, store-reserved characters and keys over the
  store's byte limit become INVALID_PATH.

sanitize() composes the two and is what engines call. Name-level
helpers (file/folder names, extensions, keep-both naming) live here
too since they share the same character rules.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Collection, Iterable, Optional
from urllib.parse import unquote

from cloudcore.core import constants as C
from cloudcore.core.errors import PathError
from cloudcore.core.types import Err, Ok, Result

_SLASH_RUN = re.compile(r"/{2,}")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_DOT_SEGMENTS = frozenset({".", ".."})
_KEEP_BOTH_SUFFIX = re.compile(r"^(?P<stem>.*) \((?P<n>\d+)\)$")


# =============================================================================
# STORAGE KEY
# =============================================================================
@dataclass(frozen=True, slots=True)
class StorageKey:
    """
    A validated object key.

    Folder keys end in "/"; the empty key is the bucket root and is
    only produced when explicitly allowed. Build with
    StorageKey.parse() (or sanitize()) rather than the constructor.
    """

    value: str

    @classmethod
    def parse(cls, raw: str, folder: bool = False) -> Result[StorageKey, PathError]:
        return sanitize(raw, folder=folder)

    @property
    def is_folder(self) -> bool:
        return self.value.endswith(C.DELIMITER)

    @property
    def is_root(self) -> bool:
        return self.value == ""

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(s for s in self.value.split(C.DELIMITER) if s)

    @property
    def name(self) -> str:
        """Last segment, without the folder slash."""
        segments = self.segments
        return segments[-1] if segments else ""

    @property
    def parent(self) -> StorageKey:
        """Containing folder key; root for top-level keys."""
        segments = self.segments
        if len(segments) <= 1:
            return ROOT
        return StorageKey(C.DELIMITER.join(segments[:-1]) + C.DELIMITER)

    def is_within(self, folder: StorageKey) -> bool:
        """True if this key lives under ``folder`` (or is it)."""
        return folder.is_root or self.value.startswith(folder.value)

    def __str__(self) -> str:
        return self.value


ROOT = StorageKey("")


# =============================================================================
# SANITIZE / VALIDATE
# =============================================================================
def sanitize_path(raw: str, folder: bool = False) -> str:
    """
    Cosmetic cleanup of a raw path. Idempotent.

    Args:
        raw: Path as typed or received
        folder: Force a trailing "/" (folder key)
    """
    path = unicodedata.normalize("NFC", raw or "")
    trailing = folder or path.endswith(C.DELIMITER)
    path = _SLASH_RUN.sub(C.DELIMITER, path).strip(C.DELIMITER)
    if path and trailing:
        path += C.DELIMITER
    return path


def _segment_problem(segment: str) -> Optional[str]:
    if segment in _DOT_SEGMENTS:
        return "path traversal segment"
    if _CONTROL_CHARS.search(segment):
        return "control characters are not allowed"
    bad = C.RESERVED_KEY_CHARACTERS.intersection(segment)
    if bad:
        return f"reserved character {sorted(bad)[0]!r} is not allowed"
    if "%" in segment:
        decoded = unquote(segment)
        if decoded in _DOT_SEGMENTS or "/" in decoded or "\\" in decoded:
            return "encoded path traversal"
    return None


def validate_key(key: str, allow_root: bool = False) -> Result[StorageKey, PathError]:
    """
    Reject keys that are unsafe to send to the store.

    Expects sanitized input; does not modify the key.
    """
    if key == "":
        if allow_root:
            return Ok(ROOT)
        return Err(PathError.invalid_path(key, "path is empty"))

    if key.startswith(C.DELIMITER):
        return Err(PathError.invalid_path(key, "leading slash"))

    if len(key.encode("utf-8")) > C.MAX_KEY_BYTES:
        return Err(PathError.invalid_path(
            key, f"key exceeds {C.MAX_KEY_BYTES} bytes"
        ))

    body = key[:-1] if key.endswith(C.DELIMITER) else key
    for segment in body.split(C.DELIMITER):
        if segment == "":
            return Err(PathError.invalid_path(key, "empty path segment"))
        problem = _segment_problem(segment)
        if problem:
            return Err(PathError.invalid_path(key, problem))

    return Ok(StorageKey(key))


def sanitize(
    raw: str,
    folder: bool = False,
    allow_root: bool = False,
) -> Result[StorageKey, PathError]:
    """sanitize_path() then validate_key()."""
    return validate_key(sanitize_path(raw, folder=folder), allow_root=allow_root)


def sanitize_prefix(raw: Optional[str]) -> Result[StorageKey, PathError]:
    """Listing prefix: a folder key, or root for empty input."""
    return sanitize(raw or "", folder=True, allow_root=True)


def sanitize_all(raws: Iterable[str]) -> Result[list[StorageKey], PathError]:
    """All-or-nothing sanitize of a key list."""
    keys: list[StorageKey] = []
    for raw in raws:
        result = sanitize(raw)
        if result.is_err():
            return result
        keys.append(result.value)
    return Ok(keys)


# =============================================================================
# NAMES
# =============================================================================
def validate_file_name(name: str) -> bool:
    """Single segment usable as a file name."""
    if not name or len(name) > C.MAX_NAME_LENGTH:
        return False
    if C.DELIMITER in name or name.strip() == "":
        return False
    return _segment_problem(name) is None


def validate_folder_name(name: str) -> bool:
    """File-name rules plus Windows device names."""
    if not validate_file_name(name):
        return False
    return name.upper() not in C.RESERVED_FOLDER_NAMES


def get_file_extension(filename: str) -> str:
    """
    Extension including the dot, or "" if there is none.

    A dot at the start (".env") or the end ("notes.") is not an
    extension.
    """
    index = filename.rfind(".")
    if index <= 0 or index == len(filename) - 1:
        return ""
    return filename[index:]


def split_extension(filename: str) -> tuple[str, str]:
    ext = get_file_extension(filename)
    return (filename[: -len(ext)], ext) if ext else (filename, "")


def preserve_file_extension(new_name: str, original_name: str) -> str:
    """Append the original extension unless ``new_name`` has its own."""
    if not new_name:
        return original_name
    original_ext = get_file_extension(original_name)
    if not original_ext or get_file_extension(new_name):
        return new_name
    return new_name + original_ext


def unique_name(name: str, existing: Collection[str]) -> str:
    """
    Keep-both naming: "report.pdf" -> "report (1).pdf", "report (2).pdf", ...

    A name that already carries a counter continues from it.
    """
    if name not in existing:
        return name
    stem, ext = split_extension(name)
    match = _KEEP_BOTH_SUFFIX.match(stem)
    counter = 1
    if match:
        stem = match.group("stem")
        counter = int(match.group("n")) + 1
    while True:
        candidate = f"{stem} ({counter}){ext}"
        if candidate not in existing:
            return candidate
        counter += 1


def join_key(folder: StorageKey, name: str, is_folder: bool = False) -> Result[StorageKey, PathError]:
    """Child key ``name`` inside ``folder``, validated."""
    return sanitize(folder.value + name, folder=is_folder)
