"""
Filesystem helpers for moving package folders around.
"""

import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Union

from src.logging_config import get_logger

logger = get_logger(__name__)


def safe_remove_directory(path: Path) -> bool:
    """
    Remove a directory tree, making read-only directories writable as needed.

    Returns:
        True if the directory no longer exists
    """
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
    except PermissionError:
        # Archives can carry read-only directories into the extracted tree.
        try:
            for entry in [path, *path.rglob('*')]:
                if entry.is_dir():
                    entry.chmod(stat.S_IRWXU)
            shutil.rmtree(path)
        except OSError as e:
            logger.error(f"Could not remove {path}: {e}")
    except OSError as e:
        logger.error(f"Could not remove {path}: {e}")
    return not path.exists()


def safe_remove_file(path: Union[str, Path, None]) -> None:
    """Delete a file if it exists. Errors are logged, not raised."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        safe_remove_file(tmp_name)
        raise
