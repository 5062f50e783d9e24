"""Owner-only file helpers for credential material.

Every credential file is written through :func:`write_private_file`, which
creates the parent directory with mode 0700 and replaces the target
atomically so readers never observe a partial write.
"""

from __future__ import annotations

import os
import stat
import tempfile

from pathlib import Path


DIR_MODE = 0o700
FILE_MODE = 0o600


def ensure_private_dir(directory: Path) -> Path:
    """Create ``directory`` (and parents) with owner-only permissions.

    Parameters
    ----------
    directory : Path
        The directory to create.

    Returns
    -------
    Path
        The same directory.
    """
    directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    if os.name == "posix" and stat.S_IMODE(directory.stat().st_mode) != DIR_MODE:
        directory.chmod(DIR_MODE)
    return directory


def write_private_file(path: Path, content: str) -> None:
    """Atomically write ``content`` to ``path`` with mode 0600.

    The content is written to a uniquely named temp file in the same
    directory, flushed to disk, then renamed over the target. Concurrent
    writers to one path each use their own temp file; the last rename wins.

    Parameters
    ----------
    path : Path
        Destination file.
    content : str
        Text to write (UTF-8).
    """
    ensure_private_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if os.name == "posix":
            tmp_path.chmod(FILE_MODE)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def read_text_file(path: Path) -> str | None:
    """Read a UTF-8 file, returning None when it does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def remove_file(path: Path) -> bool:
    """Delete ``path`` if present. Returns True if a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def describe_file(path: Path) -> dict[str, object]:
    """Return size and permission details for a stored file.

    Parameters
    ----------
    path : Path
        The file to describe.

    Returns
    -------
    dict
        ``path``, ``exists``, ``size`` and ``permissions`` (octal string).
    """
    try:
        st = path.stat()
    except FileNotFoundError:
        return {"path": str(path), "exists": False, "size": 0, "permissions": None}
    return {
        "path": str(path),
        "exists": True,
        "size": st.st_size,
        "permissions": oct(stat.S_IMODE(st.st_mode)),
    }
