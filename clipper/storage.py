import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional
from urllib.parse import quote

logger = logging.getLogger("clipper.storage")

PROJECT_PATTERN = re.compile(r"^project (\d+)$")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._ \-]+")
PARTIAL_SUFFIX = ".partial"


@dataclass(frozen=True)
class Project:
    number: int
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


def sanitize_filename(name: Optional[str], default: str = "upload.mp4") -> str:
    base = os.path.basename((name or "").replace("\\", "/")).strip()
    base = _UNSAFE_NAME_CHARS.sub("_", base).strip(". ")
    return base[:150] or default


def project_number(name: str) -> Optional[int]:
    match = PROJECT_PATTERN.fullmatch(name)
    return int(match.group(1)) if match else None


def format_file_size(num_bytes: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024.0 or unit == units[-1]:
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{num_bytes} B"


class ArtifactStore:
    """Filesystem layout for raw uploads and per-project clip folders."""

    def __init__(self, upload_dir: Path, clips_dir: Path) -> None:
        self.upload_dir = Path(upload_dir)
        self.clips_dir = Path(clips_dir)
        self._project_lock = threading.Lock()
        self._last_project = 0
        self._stamp_lock = threading.Lock()
        self._last_stamp = 0
        self.ensure_dirs()

    def ensure_dirs(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.clips_dir.mkdir(parents=True, exist_ok=True)

    def upload_path(self, original_name: Optional[str]) -> Path:
        # strictly increasing so same-named uploads never share a path
        with self._stamp_lock:
            stamp = max(int(time.time() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
        return self.upload_dir / f"{stamp}-{sanitize_filename(original_name)}"

    def allocate_project(self) -> Project:
        """Create the next ``project <N>`` folder.

        Numbers only grow for the lifetime of the store, so a folder freed by
        the sweeper is never handed to another upload.
        """
        with self._project_lock:
            existing = [n for n in (project_number(p.name) for p in self.iter_projects()) if n is not None]
            number = max([self._last_project, *existing]) + 1
            while True:
                path = self.clips_dir / f"project {number}"
                try:
                    path.mkdir(parents=True, exist_ok=False)
                except FileExistsError:
                    number += 1
                    continue
                break
            self._last_project = number
        logger.info("Allocated %s", path.name)
        return Project(number=number, path=path)

    def clip_url(self, project: Project, filename: str) -> str:
        return f"/clips/{quote(project.name)}/{quote(filename)}"

    def iter_uploads(self) -> Iterator[Path]:
        if not self.upload_dir.exists():
            return
        for child in self.upload_dir.iterdir():
            if child.is_file():
                yield child

    def iter_projects(self) -> Iterator[Path]:
        if not self.clips_dir.exists():
            return
        for child in self.clips_dir.iterdir():
            if child.is_dir() and PROJECT_PATTERN.fullmatch(child.name):
                yield child

    def remove(self, path: Path) -> int:
        """Delete a file or a directory tree and return the bytes freed.

        A path that is already gone frees nothing.
        """
        path = Path(path)
        if path.is_dir():
            freed = directory_size(path)
            shutil.rmtree(path)
            return freed
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return 0
        try:
            os.unlink(path)
        except FileNotFoundError:
            return 0
        return size


def directory_size(root: Path, exclude: Iterable[Path] = ()) -> int:
    excluded = {Path(p) for p in exclude}
    total = 0

    def _on_error(exc: OSError) -> None:
        logger.warning("Error scanning %s: %s", getattr(exc, "filename", root), exc)

    for dirpath, _dirnames, filenames in os.walk(root, onerror=_on_error):
        for filename in filenames:
            file_path = Path(dirpath) / filename
            if file_path in excluded:
                continue
            try:
                total += file_path.stat().st_size
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Error getting file size for %s: %s", file_path, exc)
    return total


class StorageAccountant:
    """Admission of new uploads against a byte quota on the artifact tree."""

    def __init__(self, store: ArtifactStore, quota_bytes: int) -> None:
        if quota_bytes <= 0:
            raise ValueError("quota_bytes must be > 0")
        self.store = store
        self.quota_bytes = quota_bytes

    def current_usage(self, exclude: Iterable[Path] = ()) -> int:
        excluded: List[Path] = [Path(p) for p in exclude]
        return directory_size(self.store.upload_dir, excluded) + directory_size(self.store.clips_dir, excluded)

    def has_capacity(self, candidate_bytes: int, exclude: Iterable[Path] = ()) -> bool:
        """True when ``candidate_bytes`` more still fit in the quota.

        ``exclude`` keeps an already-received upload from being counted twice.
        """
        used = self.current_usage(exclude)
        fits = used + candidate_bytes <= self.quota_bytes
        if not fits:
            logger.warning(
                "Storage quota exceeded: %s used + %s requested > %s quota",
                format_file_size(used),
                format_file_size(candidate_bytes),
                format_file_size(self.quota_bytes),
            )
        return fits
