"""Local file path validation.

Paths are resolved to an absolute, symlink-free form and must sit inside an
allow-listed directory. Executable and installer file types are refused
outright, wherever they live.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from .errors import SecurityError

logger = logging.getLogger("claude-agent-mcp.path_guard")

EXECUTABLE_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".msi", ".app", ".dmg", ".pkg",
    ".deb", ".rpm", ".sh", ".bash", ".zsh", ".fish", ".ps1", ".psm1",
    ".dll", ".so", ".dylib", ".jar", ".apk", ".ipa", ".vbs", ".wsf",
    ".scr", ".pif", ".gadget", ".msp", ".cpl", ".lnk", ".run",
})


def default_allowed_directories() -> list[Path]:
    """Working directory plus the usual user document folders."""
    dirs = [Path.cwd()]
    home = os.environ.get("HOME") or os.environ.get("USERPROFILE")
    if home:
        dirs.extend(Path(home) / name for name in ("Documents", "Downloads", "Desktop"))
    return dirs


def _resolve(path: "str | Path") -> Path:
    return Path(os.path.abspath(os.path.expanduser(str(path)))).resolve(strict=False)


def validate_file_extension(path: "str | Path") -> None:
    suffix = Path(path).suffix.lower()
    if suffix in EXECUTABLE_EXTENSIONS:
        raise SecurityError(
            f"Executable file type not allowed: {suffix}. Only non-executable files are permitted.",
            code="file_type_not_allowed",
        )


def is_within(path: Path, directory: Path) -> bool:
    """Prefix match on resolved paths with a separator boundary.

    ``/home/userevil`` is not inside ``/home/user``.
    """
    path_str = str(path)
    dir_str = str(directory)
    if path_str == dir_str:
        return True
    return path_str.startswith(dir_str.rstrip(os.sep) + os.sep)


def allowed_directories(extra_allowed_dirs: Optional[Iterable["str | Path"]] = None) -> list[Path]:
    dirs = default_allowed_directories() + [Path(d) for d in (extra_allowed_dirs or [])]
    return [_resolve(d) for d in dirs]


def assert_directory_allowed(
    raw_path: "str | Path",
    extra_allowed_dirs: Optional[Iterable["str | Path"]] = None,
) -> Path:
    """Resolve ``raw_path`` and require it to be inside an allowed directory."""
    if not isinstance(raw_path, (str, Path)) or not str(raw_path).strip():
        raise SecurityError("Path cannot be empty", code="invalid_path")
    if "\x00" in str(raw_path):
        raise SecurityError("Path contains a null byte", code="invalid_path")

    resolved = _resolve(raw_path)
    safe_dirs = allowed_directories(extra_allowed_dirs)
    if not any(is_within(resolved, d) for d in safe_dirs):
        logger.warning(
            f"Path outside allowed directories: {resolved} (allowed: {', '.join(map(str, safe_dirs))})"
        )
        raise SecurityError(
            f"Path is outside allowed directories: {raw_path}",
            code="path_not_allowed",
        )
    return resolved


def assert_path_allowed(
    raw_path: "str | Path",
    extra_allowed_dirs: Optional[Iterable["str | Path"]] = None,
) -> Path:
    """Validate a file path and return its resolved absolute form.

    Callers must use the returned path for I/O so the file that was checked
    is the file that gets opened. Both the requested name and the symlink
    target are checked against the extension deny-list.
    """
    if isinstance(raw_path, (str, Path)) and str(raw_path).strip():
        validate_file_extension(raw_path)
    resolved = assert_directory_allowed(raw_path, extra_allowed_dirs)
    validate_file_extension(resolved)
    return resolved


def check_file_readable(path: "str | Path") -> bool:
    """True if ``path`` is an existing regular file we may read."""
    path = Path(path)
    return path.is_file() and os.access(path, os.R_OK)


def check_file_writable(path: "str | Path") -> bool:
    """True if ``path`` can be written, or created in its parent directory."""
    path = Path(path)
    if path.exists():
        return path.is_file() and os.access(path, os.W_OK)
    parent = path.parent
    return parent.is_dir() and os.access(parent, os.W_OK)
