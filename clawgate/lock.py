"""Per-job execution locks backed by pid marker files."""

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .models import LockInfo

logger = logging.getLogger(__name__)


def is_process_running(pid: int) -> bool:
    """Whether ``pid`` names a live process."""
    if pid <= 0:
        return False
    try:
        # Signal 0 only performs the existence and permission checks
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class LockManager:
    """Advisory single-host locks under ``locks_dir``, one marker per job.

    Checking, purging and creating a marker all happen while holding an
    exclusive ``flock`` on the job's ``.guard`` file, so two processes can
    never both decide a marker is stale and both take the lock.
    """

    def __init__(self, locks_dir: Path):
        self.locks_dir = Path(locks_dir)
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.locks_dir / f"{job_id}.lock"

    @contextmanager
    def _guarded(self, job_id: str) -> Iterator[None]:
        guard_file = self.locks_dir / f"{job_id}.guard"
        fd = os.open(str(guard_file), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _held(self, job_id: str) -> bool:
        """Marker check with stale purge. Caller holds the guard."""
        if not self._path(job_id).exists():
            return False

        info = self.get_lock_info(job_id)
        if info is not None and is_process_running(info.pid):
            return True

        if info is None:
            logger.warning("Removing unreadable lock for job %s", job_id)
        else:
            logger.info("Removing stale lock for job %s (pid %s is not running)", job_id, info.pid)
        self._remove(job_id)
        return False

    def _remove(self, job_id: str) -> None:
        try:
            self._path(job_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove lock for %s: %s", job_id, e)

    def is_locked(self, job_id: str) -> bool:
        """Check the marker, purging it if its owner is gone."""
        with self._guarded(job_id):
            return self._held(job_id)

    def lock(self, job_id: str) -> bool:
        """Acquire the lock for a job. Returns False if another live process holds it."""
        with self._guarded(job_id):
            if self._held(job_id):
                return False

            info = LockInfo(pid=os.getpid())
            # The marker is complete before it becomes visible; link() fails if it exists
            temp_path = self.locks_dir / f"{job_id}.{info.pid}.tmp"
            try:
                temp_path.write_text(info.model_dump_json(by_alias=True, indent=2) + "\n", encoding="utf-8")
                os.link(temp_path, self._path(job_id))
            except FileExistsError:
                return False
            except OSError as e:
                logger.error("Failed to create lock for %s: %s", job_id, e)
                return False
            finally:
                try:
                    temp_path.unlink()
                except FileNotFoundError:
                    pass
            return True

    def unlock(self, job_id: str) -> None:
        """Release a lock. Missing locks are ignored."""
        with self._guarded(job_id):
            self._remove(job_id)

    def get_lock_info(self, job_id: str) -> Optional[LockInfo]:
        """The pid and start time recorded in a job's lock, if any."""
        lock_path = self._path(job_id)
        try:
            content = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("Failed to read lock for %s: %s", job_id, e)
            return None
        try:
            return LockInfo.model_validate_json(content)
        except ValidationError:
            return None
