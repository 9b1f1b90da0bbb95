"""
Safe I/O - atomic text writes with a one-generation backup.

A crash mid-write never leaves a half-written session file behind:
content goes to ``<path>.tmp`` first and is renamed over the target, and the
previous version is kept as ``<path>.bak`` for recovery on read.
"""

import logging
import os
import shutil
from typing import Callable, Optional, TypeVar

logger = logging.getLogger("SafeIO")

T = TypeVar("T")


def atomic_write_text(file_path: str, text: str) -> bool:
    """
    Write ``text`` atomically using temp file + rename.

    Steps:
    1. Backup existing file to .bak
    2. Write to .tmp file
    3. Atomic rename .tmp -> target

    Returns:
        True if write succeeded, False otherwise
    """
    tmp_path = file_path + ".tmp"
    bak_path = file_path + ".bak"

    try:
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)

        if os.path.exists(file_path):
            shutil.copy2(file_path, bak_path)

        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, file_path)
        return True

    except OSError as e:
        logger.error(f"Atomic write failed for {file_path}: {e}")
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError as cleanup_err:
                logger.debug(f"Could not remove {tmp_path}: {cleanup_err}")
        return False


def safe_read(file_path: str, parse: Callable[[str], T]) -> Optional[T]:
    """
    Read and parse ``file_path``, falling back to ``.bak`` when the main
    file is missing or fails to parse.

    ``parse`` must raise ValueError on bad content (JSONDecodeError is one).
    Returns None when neither file yields a value.
    """
    for path in (file_path, file_path + ".bak"):
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                value = parse(f.read())
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable content in {path}: {e}")
            continue
        if path != file_path:
            logger.info(f"Recovered {file_path} from backup")
        return value
    return None
