from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator

from pydantic import TypeAdapter, ValidationError

from .errors import JobNotFoundError, StatusStoreError
from .models import FailedEdit, JobStatus, JobStatusEntry, PartialEditState, StatusSummary, utc_now

logger = logging.getLogger(__name__)

STATUS_FILENAME = "_jobstatus.json"

_ENTRIES_ADAPTER = TypeAdapter(list[JobStatusEntry])

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle valid while the data file itself
    is swapped out with ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, fsync, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# StatusStore
# ---------------------------------------------------------------------------


class StatusStore:
    """Durable state machine over job ids, backed by one JSON array file.

    Every mutation rewrites the whole file atomically while holding both an
    in-process lock and an ``fcntl`` file lock, so concurrent job workers
    serialize their writes and readers never observe a half-written file.
    Write failures raise ``StatusStoreError`` and are fatal to the run.
    """

    def __init__(self, jobs_dir: Path, *, filename: str = STATUS_FILENAME) -> None:
        self.jobs_dir = jobs_dir
        self.path = jobs_dir / filename
        self._lock = threading.RLock()
        self._entries: dict[str, JobStatusEntry] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if not self.path.is_file():
            self._entries = {}
            return
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StatusStoreError(f"Failed to read status file {self.path}: {exc}") from exc
        if not text.strip():
            self._entries = {}
            return
        try:
            entries = _ENTRIES_ADAPTER.validate_json(text)
        except ValidationError as exc:
            raise StatusStoreError(f"Status file {self.path} failed validation: {exc}") from exc
        self._entries = {entry.id: entry for entry in entries}

    def _save(self) -> None:
        ordered = [self._entries[job_id] for job_id in sorted(self._entries)]
        payload = _ENTRIES_ADAPTER.dump_json(ordered, indent=2, exclude_none=True).decode("utf-8")
        try:
            with _locked_file(self.path):
                _atomic_write_text(self.path, payload + "\n")
        except OSError as exc:
            raise StatusStoreError(f"Failed to write status file {self.path}: {exc}") from exc

    def reload(self) -> None:
        with self._lock:
            self._load()

    def _require(self, job_id: str) -> JobStatusEntry:
        entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFoundError(job_id)
        return entry

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def sync(self, discovered_ids: Iterable[str]) -> tuple[list[str], list[str]]:
        """Add Created entries for new ids and drop entries whose job file is gone.

        Returns:
            ``(added, removed)`` id lists, each sorted.
        """
        discovered = set(discovered_ids)
        with self._lock:
            added = sorted(discovered - self._entries.keys())
            removed = sorted(self._entries.keys() - discovered)
            for job_id in removed:
                logger.warning("Job file deleted, removing from status: %s", job_id)
                del self._entries[job_id]
            for job_id in added:
                logger.debug("Tracking new job: %s", job_id)
                self._entries[job_id] = JobStatusEntry(id=job_id)
            if added or removed:
                self._save()
        return added, removed

    def update(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            entry = self._require(job_id)
            entry.update_status(status)
            self._save()
        logger.info("Job %s -> %s", job_id, status.value)

    def update_many(self, updates: Iterable[tuple[str, JobStatus]]) -> None:
        """Apply several status updates with a single file rewrite."""
        with self._lock:
            pending = list(updates)
            for job_id, _ in pending:
                self._require(job_id)
            for job_id, status in pending:
                self._entries[job_id].update_status(status)
            if pending:
                self._save()

    def set_failed(self, job_id: str, message: str) -> None:
        with self._lock:
            self._require(job_id).set_failed(message)
            self._save()
        logger.info("Job %s -> fail: %s", job_id, message.splitlines()[0] if message else "")

    def set_partial(self, job_id: str, state: PartialEditState) -> None:
        with self._lock:
            entry = self._require(job_id)
            entry.update_status(JobStatus.PARTIAL)
            entry.partial_state = state.model_copy(deep=True)
            self._save()
        logger.warning(
            "Job %s -> partial: %d edit(s) applied, %d failed",
            job_id,
            len(state.successful_edits),
            len(state.failed_edits),
        )

    def clear_partial_state(self, job_id: str) -> None:
        with self._lock:
            entry = self._require(job_id)
            entry.partial_state = None
            entry.updated_at = utc_now()
            self._save()

    def mark_ran(self, job_id: str) -> None:
        with self._lock:
            entry = self._require(job_id)
            entry.ran = True
            entry.updated_at = utc_now()
            self._save()

    def reset_job(self, job_id: str) -> None:
        with self._lock:
            entry = self._require(job_id)
            entry.status = JobStatus.CREATED
            entry.error = None
            entry.partial_state = None
            entry.ran = False
            entry.updated_at = utc_now()
            self._save()
        logger.info("Job %s reset to created", job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> JobStatusEntry:
        with self._lock:
            return self._require(job_id).model_copy(deep=True)

    def entries(self) -> list[JobStatusEntry]:
        with self._lock:
            return [self._entries[job_id].model_copy(deep=True) for job_id in sorted(self._entries)]

    def _select(self, predicate: Callable[[JobStatusEntry], bool]) -> list[str]:
        with self._lock:
            return sorted(job_id for job_id, entry in self._entries.items() if predicate(entry))

    def by_status(self, status: JobStatus) -> list[str]:
        return self._select(lambda entry: entry.status is status)

    def ready_jobs(self) -> list[str]:
        return self._select(lambda entry: entry.status.is_ready and not entry.ran)

    def ready_jobs_including_ran(self) -> list[str]:
        return self._select(lambda entry: entry.status.is_ready)

    def stuck_jobs(self) -> list[str]:
        return self._select(lambda entry: entry.status.is_stuck)

    def partial_jobs(self) -> list[str]:
        return self._select(lambda entry: entry.status.is_partial)

    def ran_non_pass_jobs(self) -> list[str]:
        return self._select(lambda entry: entry.ran and entry.status is not JobStatus.PASS)

    def failed_edits(self, job_id: str) -> list[FailedEdit]:
        entry = self.get(job_id)
        if entry.partial_state is None:
            return []
        return list(entry.partial_state.failed_edits)

    def summary(self) -> StatusSummary:
        with self._lock:
            statuses = [entry.status for entry in self._entries.values()]
        return StatusSummary(
            total=len(statuses),
            created=sum(1 for status in statuses if status is JobStatus.CREATED),
            pending=sum(1 for status in statuses if status.is_stuck and not status.is_partial),
            partial=sum(1 for status in statuses if status.is_partial),
            passed=sum(1 for status in statuses if status is JobStatus.PASS),
            failed=sum(1 for status in statuses if status is JobStatus.FAIL),
        )
