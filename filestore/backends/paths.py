from __future__ import annotations

import os
import posixpath
import re
import secrets
import string

from filestore.config import COLLISION_SUFFIX_LENGTH

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_PATTERN = re.compile(rf"_[a-z0-9]{{{COLLISION_SUFFIX_LENGTH}}}$")
_MULTI_SLASH = re.compile(r"/{2,}")


def format_slash(path: str) -> str:
    """Collapse runs of ``/`` into a single separator."""
    return _MULTI_SLASH.sub("/", path.replace("\\", "/"))


def join_path(*parts: str | None) -> str:
    return format_slash("/".join(part for part in parts if part))


def normalize_group_path(path: str) -> str:
    """``img//2024/`` -> ``/img/2024``; the storage root becomes ``/``.

    ``.`` and ``..`` segments are resolved, never climbing above the root.
    """
    cleaned = posixpath.normpath("/" + format_slash(path).strip("/"))
    return "/" + cleaned.strip("/")


def virtual_name(group_path: str | None, file_name: str) -> str:
    return format_slash(f"{group_path or ''}/{file_name}")


def split_virtual_name(name: str) -> tuple[str | None, str]:
    """Split ``/img/a.png`` into (``/img``, ``a.png``).

    Names without a directory part (``a.png``, ``/a.png``, ``./a.png``) have no
    group and yield ``None``.
    """
    normalized = format_slash(name)
    directory = normalize_group_path(posixpath.dirname(normalized))
    base = posixpath.basename(normalized)
    if directory == "/":
        return None, base
    return directory, base


def _random_suffix(length: int = COLLISION_SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def strip_collision_suffix(file_name: str) -> str:
    """``a_k3j9x.png`` -> ``a.png``; names without a suffix come back unchanged."""
    stem, ext = os.path.splitext(file_name)
    return _SUFFIX_PATTERN.sub("", stem) + ext


def add_random_suffix(file_name: str, replace_existing: bool = True) -> str:
    """Return ``file_name`` with ``_xxxxx`` inserted before the extension.

    With ``replace_existing`` a trailing ``_xxxxx`` already on the stem is
    replaced instead of stacked. Callers pass False when that trailing part
    belongs to the real name (``report_final.pdf``).
    """
    stem, ext = os.path.splitext(file_name)
    if replace_existing:
        stem = _SUFFIX_PATTERN.sub("", stem)
    while True:
        candidate = f"{stem}_{_random_suffix()}{ext}"
        if candidate != file_name:
            return candidate
