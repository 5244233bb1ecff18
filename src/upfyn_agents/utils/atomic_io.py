"""Atomic writes for session bookkeeping files."""

import contextlib
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """Write `content` through a sibling temp file and an atomic rename.

    Session files (``alive``, ``pid``, ``backend``, ``cmd``) are read by other
    upfyn processes while a session starts, so a reader sees either the old
    value or the new one, never a partial write. Windows refuses the rename
    while another process holds the target open; that case is retried.

    Raises:
        OSError: if every attempt failed
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(1, max_retries + 1):
        fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=f".{file_path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, file_path)
            return
        except OSError as e:
            if attempt == max_retries:
                logger.error(f"Giving up on {file_path} after {max_retries} attempts: {e}")
                raise
            logger.debug(f"Write to {file_path} failed (attempt {attempt}/{max_retries}): {e}")
        finally:
            if os.path.exists(tmp_name):
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
