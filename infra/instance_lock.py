"""
Single Instance Lock

PID-file lock ensuring one rampsettle process per data directory. The
duplicate guard and liquidity cache live in process memory, so a second
process would let two orders for the same customer through.

The lock is released on clean exit; a lock left by a dead process is
treated as stale and replaced.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("rampsettle")
        if not lock.acquire():
            sys.exit(1)
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another live process holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            existing_pid = self.holder_pid()
            if existing_pid is not None and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). Lock file: {self.lock_file}"
                )
                return False
            logger.warning(f"Removing stale lock file {self.lock_file} (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            logger.error(f"Lock file {self.lock_file} appeared concurrently; not starting")
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.holder_pid() == os.getpid():
                self.lock_file.unlink()
                logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
