import threading

import pytest

from clipper.storage import (
    ArtifactStore,
    StorageAccountant,
    directory_size,
    format_file_size,
    project_number,
    sanitize_filename,
)


def test_quota_admits_only_what_fits(store):
    (store.upload_dir / "old.mp4").write_bytes(b"x" * 900)
    accountant = StorageAccountant(store, quota_bytes=1000)

    assert accountant.current_usage() == 900
    assert accountant.has_capacity(150) is False
    assert accountant.has_capacity(50) is True
    assert accountant.has_capacity(100) is True


def test_quota_counts_uploads_and_nested_clips(store):
    (store.upload_dir / "a.mp4").write_bytes(b"x" * 10)
    project = store.allocate_project()
    (project.path / "part1.mp4").write_bytes(b"x" * 20)
    nested = project.path / "nested"
    nested.mkdir()
    (nested / "extra.bin").write_bytes(b"x" * 5)

    assert StorageAccountant(store, quota_bytes=1000).current_usage() == 35


def test_received_upload_is_not_counted_twice(store):
    upload = store.upload_dir / "incoming.mp4"
    upload.write_bytes(b"x" * 600)
    accountant = StorageAccountant(store, quota_bytes=1000)

    assert accountant.has_capacity(600) is False
    assert accountant.has_capacity(600, exclude=[upload]) is True


def test_accountant_rejects_non_positive_quota(store):
    with pytest.raises(ValueError):
        StorageAccountant(store, quota_bytes=0)


def test_directory_size_of_missing_dir_is_zero(tmp_path):
    assert directory_size(tmp_path / "missing") == 0


def test_projects_are_numbered_sequentially(store):
    first = store.allocate_project()
    second = store.allocate_project()

    assert (first.number, first.name) == (1, "project 1")
    assert (second.number, second.name) == (2, "project 2")
    assert first.path.is_dir() and second.path.is_dir()


def test_numbering_continues_after_existing_projects(store):
    (store.clips_dir / "project 7").mkdir()
    (store.clips_dir / "project x").mkdir()
    (store.clips_dir / "notes").mkdir()

    assert store.allocate_project().number == 8


def test_swept_project_number_is_not_reused(store):
    store.allocate_project()
    second = store.allocate_project()
    store.remove(second.path)

    assert store.allocate_project().number == 3


def test_concurrent_allocations_are_unique(tmp_path):
    store = ArtifactStore(tmp_path / "u", tmp_path / "c")
    numbers = []
    barrier = threading.Barrier(8)

    def allocate():
        barrier.wait()
        numbers.append(store.allocate_project().number)

    threads = [threading.Thread(target=allocate) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(numbers) == list(range(1, 9))


def test_upload_path_is_timestamped_and_sanitized(store):
    path = store.upload_path("../../etc/passwd")

    assert path.parent == store.upload_dir
    stamp, _, name = path.name.partition("-")
    assert stamp.isdigit()
    assert name == "passwd"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("clip.mp4", "clip.mp4"),
        ("my video (1).mp4", "my video _1_.mp4"),
        ("C:\\Users\\me\\clip.mov", "clip.mov"),
        ("", "upload.mp4"),
        (None, "upload.mp4"),
        ("...", "upload.mp4"),
    ],
)
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_clip_url_is_quoted(store):
    project = store.allocate_project()

    assert store.clip_url(project, "part1.mp4") == "/clips/project%201/part1.mp4"


def test_iter_projects_ignores_unrelated_entries(store):
    store.allocate_project()
    (store.clips_dir / "README").write_text("hi")
    (store.clips_dir / "tmp").mkdir()

    assert [p.name for p in store.iter_projects()] == ["project 1"]


def test_remove_reports_freed_bytes(store):
    upload = store.upload_dir / "a.mp4"
    upload.write_bytes(b"x" * 42)
    project = store.allocate_project()
    (project.path / "part1.mp4").write_bytes(b"x" * 8)

    assert store.remove(upload) == 42
    assert store.remove(project.path) == 8
    assert not upload.exists()
    assert not project.path.exists()
    assert store.remove(upload) == 0


def test_project_number_parsing():
    assert project_number("project 12") == 12
    assert project_number("project") is None
    assert project_number("project 1 copy") is None


def test_format_file_size():
    assert format_file_size(512) == "512.00 B"
    assert format_file_size(10 * 1024 ** 3) == "10.00 GB"


def test_same_named_uploads_get_distinct_paths(store):
    paths = {store.upload_path("clip.mp4") for _ in range(50)}

    assert len(paths) == 50
