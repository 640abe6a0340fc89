import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set

import structlog

from .registry import JobRegistry
from .storage import ArtifactStore, format_file_size

logger = logging.getLogger("clipper.sweeper")
struct_logger = structlog.get_logger("clipper.sweeper")


@dataclass
class SweepReport:
    deleted_files: List[Path] = field(default_factory=list)
    deleted_projects: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    freed_bytes: int = 0
    errors: int = 0

    @property
    def deleted(self) -> int:
        return len(self.deleted_files) + len(self.deleted_projects)


def _claims_inside(folder: Path, claimed: Set[Path]) -> bool:
    for path in claimed:
        if path == folder:
            return True
        try:
            path.relative_to(folder)
        except ValueError:
            continue
        return True
    return False


class RetentionSweeper:
    """Delete uploads and project folders older than the retention window.

    Anything claimed by a job in the registry is left alone.
    """

    def __init__(self, store: ArtifactStore, registry: JobRegistry, retention_seconds: float = 300) -> None:
        self.store = store
        self.registry = registry
        self.retention_seconds = retention_seconds

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        now = time.time() if now is None else now
        cutoff = now - self.retention_seconds
        claimed = self.registry.claimed_paths()
        report = SweepReport()

        try:
            uploads = list(self.store.iter_uploads())
        except OSError as exc:
            logger.warning("Failed to scan upload directory %s: %s", self.store.upload_dir, exc)
            report.errors += 1
            uploads = []

        for file_path in uploads:
            if file_path in claimed:
                logger.info("Skipping active file in cleanup: %s", file_path.name)
                report.skipped.append(file_path)
                continue
            try:
                if file_path.stat().st_mtime >= cutoff:
                    continue
                freed = self.store.remove(file_path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Error handling upload file %s: %s", file_path.name, exc)
                report.errors += 1
                continue
            report.deleted_files.append(file_path)
            report.freed_bytes += freed
            logger.info("Deleted old upload file: %s (%s)", file_path.name, format_file_size(freed))

        try:
            projects = list(self.store.iter_projects())
        except OSError as exc:
            logger.warning("Failed to scan clips directory %s: %s", self.store.clips_dir, exc)
            report.errors += 1
            projects = []

        for folder in projects:
            if _claims_inside(folder, claimed):
                logger.info("Skipping active project folder in cleanup: %s", folder.name)
                report.skipped.append(folder)
                continue
            try:
                if folder.stat().st_mtime >= cutoff:
                    continue
                freed = self.store.remove(folder)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Error handling project folder %s: %s", folder.name, exc)
                report.errors += 1
                continue
            report.deleted_projects.append(folder)
            report.freed_bytes += freed
            logger.info("Deleted old project folder: %s", folder)

        if report.deleted:
            struct_logger.info(
                "sweep_completed",
                deleted_files=len(report.deleted_files),
                deleted_projects=len(report.deleted_projects),
                freed=format_file_size(report.freed_bytes),
                errors=report.errors,
            )
        return report

    async def run_periodically(self, interval: float) -> None:
        """Sweep now and then every ``interval`` seconds until cancelled."""
        while True:
            try:
                self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Periodic cleanup failed: %s", exc)
            await asyncio.sleep(interval)
