import os
import sys
import time
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from clipper.registry import JobRegistry  # noqa: E402
from clipper.storage import ArtifactStore  # noqa: E402


class FakeProcess:
    """Stands in for an asyncio subprocess; records kills."""

    def __init__(self, returncode=None):
        self.returncode = returncode
        self.killed = False

    def kill(self):
        self.killed = True
        self.returncode = -9


def age(path: Path, seconds: float) -> None:
    stamp = time.time() - seconds
    os.utime(path, (stamp, stamp))


@pytest.fixture()
def store(tmp_path):
    return ArtifactStore(tmp_path / "uploads", tmp_path / "clips")


@pytest.fixture()
def registry():
    return JobRegistry(max_jobs=2)
