import os
import posixpath
from pathlib import Path
from typing import Optional, Tuple, Union

OUTSIDE_ROOT = "Path escapes the site directory"
INVALID_PATH = "Path contains invalid characters"


def confine(
    root: Union[str, Path], user_path: Optional[str]
) -> Tuple[Optional[Path], Optional[str]]:
    """Resolve *user_path* inside *root* without touching the filesystem.

    Returns ``(path, None)`` when the resolved path is *root* itself or lies
    beneath it, and ``(None, reason)`` otherwise. Never raises, so callers can
    map a rejection straight onto a 400 response.

    Absolute inputs are refused even when they happen to point inside
    *root*. Backslashes are treated as separators and embedded NUL bytes are
    refused outright. A trailing slash is accepted but not reflected in the returned
    :class:`~pathlib.Path`; callers that care about "this is a directory"
    should look at the raw input.
    """

    if user_path is None:
        user_path = ""
    if not isinstance(user_path, str) or "\x00" in user_path:
        return None, INVALID_PATH

    root_str = os.path.abspath(os.fspath(root))
    if "\x00" in root_str:
        return None, INVALID_PATH

    normalized = posixpath.normpath(user_path.replace("\\", "/")) if user_path else "."
    if normalized.startswith("/"):
        return None, OUTSIDE_ROOT
    resolved = os.path.normpath(os.path.join(root_str, normalized))

    prefix = root_str if root_str.endswith(os.sep) else root_str + os.sep
    if resolved != root_str and not resolved.startswith(prefix):
        return None, OUTSIDE_ROOT
    return Path(resolved), None


def is_confined(root: Union[str, Path], user_path: Optional[str]) -> bool:
    path, _ = confine(root, user_path)
    return path is not None
