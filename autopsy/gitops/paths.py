from __future__ import annotations

import re
from urllib.parse import quote

from autopsy.errors import UnsafePathError

_DRIVE = re.compile(r"^[A-Za-z]:")


def normalize_repo_path(p: str) -> str:
    """
    Clean a model-proposed path into a repository-relative one.

    Returns "" when nothing usable is left: empty input, absolute paths and
    any path with a `..` segment. Callers treat "" as "no target file".
    """
    p = (p or "").strip().strip("`").strip()
    if not p or p.startswith(("/", "\\")) or _DRIVE.match(p):
        return ""
    while p.startswith("./"):
        p = p[2:]
    parts = [s for s in p.split("/") if s not in ("", ".")]
    if not parts or any(s == ".." or "\\" in s or "\x00" in s for s in parts):
        return ""
    return "/".join(parts)


def require_repo_path(p: str) -> str:
    rel = normalize_repo_path(p)
    if not rel:
        raise UnsafePathError(f"refusing repository path {p!r}", path=p)
    return rel


def quote_repo_path(rel: str) -> str:
    # Each segment is escaped so `#` and `?` in file names stay part of the path.
    return quote(rel, safe="/")
