"""Locked, atomically replaced JSON files.

Used for the applied-update state of the config provider and for the JSON
approval store. Readers and writers take an exclusive lock on a sibling
'.lock' file; writes go to a '.tmp' file that is renamed over the target.
"""

import json
import logging
import platform
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any

IS_WINDOWS = platform.system() == 'Windows'
if not IS_WINDOWS:
    import fcntl
else:
    import msvcrt

logger = logging.getLogger(__name__)


@contextmanager
def file_lock(file_path: Path):
    """Context manager for file locking."""
    lock_file = Path(file_path).with_suffix('.lock')
    fp = open(lock_file, 'w')
    try:
        if IS_WINDOWS:
            while True:
                try:
                    msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
                    break
                except IOError:
                    time.sleep(0.1)
        else:
            fcntl.flock(fp, fcntl.LOCK_EX)
        yield
    finally:
        if IS_WINDOWS:
            try:
                msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
            except (OSError, IOError):
                pass
        else:
            fcntl.flock(fp, fcntl.LOCK_UN)
        fp.close()


def read_json(file_path: Path, default: Any = None) -> Any:
    """Read a JSON file. Caller holds the lock.

    A missing file gives `default`; an unparseable one is logged and also
    gives `default` so that a corrupt state file never stops the controller.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        return default
    try:
        with open(file_path, 'r') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("error parsing %s, starting fresh: %s", file_path, e)
        return default


def write_json(file_path: Path, data: Any) -> None:
    """Atomically replace a JSON file. Caller holds the lock."""
    file_path = Path(file_path)
    temp_file = file_path.with_suffix('.tmp')
    with open(temp_file, 'w') as f:
        json.dump(data, f, indent=2)
    temp_file.replace(file_path)
