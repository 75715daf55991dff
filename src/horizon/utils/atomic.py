"""Atomic file writes.

Readers (health checks, the CLI, a restarted agent) must never observe a
half-written state record, so every persisted file goes through a temporary
file in the same directory followed by ``os.replace``.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union


def atomic_write_bytes(path: Union[str, Path], content: bytes, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

    # Persist the rename itself
    try:
        dir_fd = os.open(str(path.parent), os.O_RDONLY | os.O_DIRECTORY)
    except (OSError, AttributeError):
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def atomic_write_text(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """Write text content to ``path`` atomically."""
    atomic_write_bytes(path, content.encode("utf-8"), mode)


def atomic_write_json(path: Union[str, Path], data: Any, indent: int = 2,
                      mode: int = 0o644) -> None:
    """Serialise ``data`` as JSON and write it atomically."""
    content = json.dumps(data, indent=indent, ensure_ascii=False)
    atomic_write_text(path, content + "\n", mode)
