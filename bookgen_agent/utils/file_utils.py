"""
File utility functions for Bookgen Agent.

Atomic writes for generated artifacts (images, audio, manuscripts) and
directory setup for the configured output paths.
"""

import os
import tempfile
from typing import Dict


def ensure_directories(paths: Dict[str, str]) -> None:
    """Create directories from a paths dict if they don't exist.

    Entries that point at files (the database) get their parent created.

    Args:
        paths: Dictionary mapping names to directory or file paths.

    Examples:
        >>> ensure_directories({"audio": "output/audio", "database": "db/app.db"})
    """
    for name, path in paths.items():
        target = os.path.dirname(path) if name == "database" else path
        if target:
            os.makedirs(target, exist_ok=True)


def atomic_write_bytes(path: str, data: bytes) -> str:
    """Write bytes to ``path`` via a temp file and rename.

    Readers never observe a partially written artifact. The parent
    directory is created when missing.

    Args:
        path: Destination file path.
        data: Bytes to write.

    Returns:
        The destination path.

    Examples:
        >>> atomic_write_bytes("output/audio/b1/chapter_1.mp3", audio)
    """
    dst_dir = os.path.dirname(path) or "."
    os.makedirs(dst_dir, exist_ok=True)

    with tempfile.NamedTemporaryFile(dir=dst_dir, delete=False, suffix=".tmp") as tmp:
        tmp_path = tmp.name
        tmp.write(data)

    try:
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    return path


def atomic_write_text(path: str, text: str) -> str:
    return atomic_write_bytes(path, text.encode("utf-8"))

