"""Crash-safe file writes."""

import os
import tempfile
from pathlib import Path

from ..exceptions import PermissionDeniedError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


def atomic_write_text(path: Path, content: str, mode: int = 0o600) -> None:
    """Write ``content`` to ``path`` so readers see either the old or the new file.

    The content is fully written and fsynced to a temporary file in the same
    directory, then swapped into place with ``os.replace``.

    Raises:
        PermissionDeniedError: If the directory or file is not writable
        StorageError: For any other filesystem failure
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot write to {path.parent}: {e}") from e
    except OSError as e:
        raise StorageError(f"Cannot create temporary file in {path.parent}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException as e:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        if isinstance(e, PermissionError):
            raise PermissionDeniedError(f"Cannot write {path}: {e}") from e
        if isinstance(e, OSError):
            raise StorageError(f"Cannot write {path}: {e}") from e
        raise

    logger.debug("File written atomically", path=str(path))
