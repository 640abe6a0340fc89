import math
from pathlib import Path

import pytest

from clipper.models import OverlayConfig, SegmentOutcome
from clipper.segmenter import plan_segments
from clipper.transcode import EncodingProfile, build_segment_command


def test_uneven_duration_clamps_last_segment():
    segments = plan_segments(310, 120)

    assert [s.index for s in segments] == [1, 2, 3]
    assert [s.start for s in segments] == [0, 120, 240]
    assert [s.duration for s in segments] == [120, 120, 70]
    assert segments[-1].end == 310
    assert all(s.outcome is SegmentOutcome.PENDING for s in segments)


def test_even_duration_has_no_zero_length_trailer():
    segments = plan_segments(240, 120)

    assert len(segments) == 2
    assert segments[-1].duration == 120


def test_short_video_is_single_segment():
    segments = plan_segments(4.5, 120)

    assert len(segments) == 1
    assert segments[0].start == 0
    assert segments[0].duration == 4.5


@pytest.mark.parametrize("duration", [0.1, 1, 119.999, 120, 120.5, 359.9, 600, 3601.25])
@pytest.mark.parametrize("length", [1, 30, 120])
def test_plan_covers_duration_exactly(duration, length):
    segments = plan_segments(duration, length)
    n = math.ceil(duration / length)

    assert len(segments) == n
    assert math.isclose(sum(s.duration for s in segments), duration, rel_tol=1e-9, abs_tol=1e-9)
    last = segments[-1]
    assert math.isclose(last.duration, duration - (n - 1) * length, abs_tol=1e-9)
    assert 0 < last.duration <= length


def test_output_paths_follow_part_numbering(tmp_path):
    segments = plan_segments(250, 120, tmp_path / "project 1")

    assert [s.output_path for s in segments] == [
        Path(tmp_path / "project 1" / "part1.mp4"),
        Path(tmp_path / "project 1" / "part2.mp4"),
        Path(tmp_path / "project 1" / "part3.mp4"),
    ]


def test_output_path_is_optional():
    assert plan_segments(10)[0].output_path is None


@pytest.mark.parametrize("duration", [0, -5, float("nan"), float("inf")])
def test_rejects_invalid_duration(duration):
    with pytest.raises(ValueError):
        plan_segments(duration, 120)


def test_rejects_invalid_segment_length():
    with pytest.raises(ValueError):
        plan_segments(100, 0)


def test_sub_millisecond_trailer_is_dropped(tmp_path):
    segments = plan_segments(240.0004, 120, tmp_path)

    assert len(segments) == 2
    assert segments[-1].duration == 120


def test_every_planned_segment_has_a_nonzero_ffmpeg_duration(tmp_path):
    for segment in plan_segments(360.0009, 120, tmp_path):
        cmd = build_segment_command(tmp_path / "in.mp4", segment, OverlayConfig(), EncodingProfile())
        assert float(cmd[cmd.index("-t") + 1]) > 0


def test_rejects_sub_millisecond_media():
    with pytest.raises(ValueError):
        plan_segments(0.0004, 120)
