"""
Atomic file write helpers.

Every artifact that a later run may pick up from the cache or output
directory is written to a temporary sibling first and moved into place
with ``os.replace`` only once complete.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


@contextmanager
def atomic_path(target_path: Path, suffix: str = ".tmp") -> Iterator[Path]:
    """
    Yield a temporary path that replaces ``target_path`` on clean exit.

    The temporary file lives in the target's directory so the final
    ``os.replace`` is a same-filesystem rename. On any exception the
    temporary file is removed and the target is left untouched.

    Args:
        target_path: Final destination
        suffix: Suffix of the temporary file (some writers infer the
            format from the extension, e.g. ``.h5ad``)

    Yields:
        Path: Temporary path to write to
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_name = tempfile.mkstemp(
        prefix=f".{target_path.name}.", suffix=suffix, dir=target_path.parent
    )
    os.close(temp_fd)
    temp_file = Path(temp_name)

    try:
        yield temp_file
        os.replace(temp_file, target_path)
    except BaseException:
        if temp_file.exists():
            temp_file.unlink()
        raise


def atomic_write_json(target_path: Path, data: Any, indent: int = 2) -> None:
    """Persist ``data`` to ``target_path`` atomically as JSON."""

    with atomic_path(Path(target_path)) as temp_file:
        with open(temp_file, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=indent, default=str)
            handle.flush()
            os.fsync(handle.fileno())


def atomic_write_text(target_path: Path, text: str) -> None:
    """Persist ``text`` to ``target_path`` atomically."""

    with atomic_path(Path(target_path)) as temp_file:
        with open(temp_file, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
