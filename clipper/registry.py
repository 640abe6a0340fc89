"""
In-memory job registry and admission control.

A job holds one slot from admission until it is unregistered or cancelled.
While a segment transcode runs, the job also holds the handle of the ffmpeg
process so it can be killed from another request, the sweeper, or shutdown.
"""

import enum
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set
from uuid import uuid4

import structlog

from .errors import AdmissionRejected, JobCancelledError

logger = logging.getLogger("clipper.registry")
struct_logger = structlog.get_logger("clipper.registry")


class JobState(str, enum.Enum):
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class JobProcessHandle:
    __slots__ = ("process", "cancelled")

    def __init__(self) -> None:
        self.process: Optional[Any] = None
        self.cancelled = False

    def kill(self) -> bool:
        """SIGKILL the attached process if it is still running."""
        process = self.process
        if process is None:
            return False
        if getattr(process, "returncode", None) is not None:
            return False
        try:
            process.kill()
        except ProcessLookupError:
            return False
        return True


@dataclass
class Job:
    job_id: str
    created: float = field(default_factory=time.time)
    state: JobState = JobState.ADMITTED
    handle: Optional[JobProcessHandle] = None
    paths: Set[Path] = field(default_factory=set)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "created": self.created,
            "running_process": self.handle is not None and self.handle.process is not None,
            "paths": sorted(str(p) for p in self.paths),
        }


@dataclass
class AdmissionDecision:
    admitted: bool
    job_id: Optional[str] = None

    @property
    def status(self) -> str:
        return "admitted" if self.admitted else "busy"


def new_job_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid4().hex[:6]}"


class JobRegistry:
    """Thread-safe registry of in-flight jobs bounded by a concurrency ceiling."""

    def __init__(self, max_jobs: int = 2) -> None:
        if max_jobs < 1:
            raise ValueError("max_jobs must be >= 1")
        self.max_jobs = max_jobs
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def try_admit(self) -> AdmissionDecision:
        with self._lock:
            if len(self._jobs) >= self.max_jobs:
                return AdmissionDecision(admitted=False)
            job_id = new_job_id()
            while job_id in self._jobs:
                job_id = new_job_id()
            self._jobs[job_id] = Job(job_id=job_id)
        struct_logger.info("job_admitted", job_id=job_id)
        return AdmissionDecision(admitted=True, job_id=job_id)

    @contextmanager
    def slot(self) -> Iterator[str]:
        """Hold a job slot for the duration of the block."""
        decision = self.try_admit()
        if not decision.admitted:
            logger.warning("Admission rejected: %d/%d jobs running", len(self), self.max_jobs)
            raise AdmissionRejected()
        try:
            yield decision.job_id
        finally:
            self.unregister(decision.job_id)

    def register(self, job_id: str, process_handle: JobProcessHandle, owned_paths: Iterable[Path] = ()) -> None:
        """Attach a process handle before the process is spawned."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobCancelledError(job_id)
            job.handle = process_handle
            job.paths.update(Path(p) for p in owned_paths)
            job.state = JobState.RUNNING

    def claim(self, job_id: str, *paths: Path) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobCancelledError(job_id)
            job.paths.update(Path(p) for p in paths)

    def detach(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.handle = None

    def mark(self, job_id: str, state: JobState) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.state = state

    def unregister(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is not None:
            logger.info("Released job %s (%s)", job_id, job.state.value)

    def cancel(self, job_id: str) -> bool:
        """Kill the job's process and drop it; owned files are left for the sweeper."""
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            job.state = JobState.CANCELLED
            handle = job.handle
            if handle is not None:
                handle.cancelled = True

        killed = False
        if handle is not None:
            try:
                killed = handle.kill()
            except Exception as exc:
                logger.warning("Failed to kill process for job %s: %s", job_id, exc)
        struct_logger.info("job_cancelled", job_id=job_id, process_killed=killed)
        return True

    def cancel_all(self) -> List[str]:
        with self._lock:
            job_ids = list(self._jobs)
        cancelled = [job_id for job_id in job_ids if self.cancel(job_id)]
        if cancelled:
            logger.info("Cancelled %d active job(s)", len(cancelled))
        return cancelled

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def claimed_paths(self) -> Set[Path]:
        with self._lock:
            claimed: Set[Path] = set()
            for job in self._jobs.values():
                claimed.update(job.paths)
            return claimed

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values()]
