"""Utility functions for convmem."""

import hashlib
import os
import re
import stat
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^\w.\-@]+")
_MAX_FILENAME_STEM = 128


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the convmem home directory (~/.convmem)."""
    return ensure_dir(Path.home() / ".convmem")


def safe_filename(name: str) -> str:
    """
    Convert a string to a filesystem-safe filename, one per distinct input.

    Names made only of safe characters are kept as they are. Anything that
    had to be rewritten or shortened gets ``~`` plus a digest of the raw
    name appended; ``~`` never survives sanitizing, so a rewritten name
    cannot collide with a kept one.
    """
    s = _UNSAFE_CHARS.sub("_", name)
    if s and s == name and len(s) <= _MAX_FILENAME_STEM:
        return s
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]
    return f"{s[:_MAX_FILENAME_STEM - 17] or 'default'}~{digest}"


def generate_session_id() -> str:
    """Generate a random session identifier."""
    return str(uuid.uuid4())


def utc_now() -> str:
    """Current time as an ISO-8601 string (UTC)."""
    return datetime.now(timezone.utc).isoformat()


def file_mtime(path: Path) -> str:
    """Modification time of ``path`` as an ISO-8601 string (UTC)."""
    return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat()


def _new_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def atomic_write_text(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers see the old or the new file, never a mix.

    The data goes to a temporary file in the same directory, is fsynced, and
    is then renamed over the target. The target keeps its permissions; a new
    file gets the usual umask-based mode.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = _new_file_mode()

    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        delete=False,
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    ) as tmp:
        tmp_name = tmp.name
        try:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            os.unlink(tmp_name)
            raise

    try:
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        os.unlink(tmp_name)
        raise
