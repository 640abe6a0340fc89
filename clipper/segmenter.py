import math
from pathlib import Path
from typing import List, Optional

from .models import SegmentDescriptor

DEFAULT_SEGMENT_SECONDS = 120
# ffmpeg timestamps are passed with millisecond precision
MIN_SEGMENT_SECONDS = 0.001


def plan_segments(
    duration: float,
    segment_length: float = DEFAULT_SEGMENT_SECONDS,
    output_dir: Optional[Path] = None,
) -> List[SegmentDescriptor]:
    """Split ``duration`` seconds into consecutive ``segment_length`` slices.

    The final slice is clamped to the remainder. A remainder shorter than
    ``MIN_SEGMENT_SECONDS`` is dropped instead of becoming its own segment, so
    no slice ever rounds to a zero-length ``-t``.
    """
    if not math.isfinite(duration) or duration < MIN_SEGMENT_SECONDS:
        raise ValueError(f"duration must be at least {MIN_SEGMENT_SECONDS}s, got {duration!r}")
    if not math.isfinite(segment_length) or segment_length < MIN_SEGMENT_SECONDS:
        raise ValueError(f"segment_length must be at least {MIN_SEGMENT_SECONDS}s, got {segment_length!r}")

    count = math.ceil(duration / segment_length)
    segments: List[SegmentDescriptor] = []
    for i in range(count):
        start = i * segment_length
        length = min(segment_length, duration - start)
        if length < MIN_SEGMENT_SECONDS:
            break
        segment = SegmentDescriptor(index=i + 1, start=start, duration=length)
        if output_dir is not None:
            segment.output_path = Path(output_dir) / segment.filename
        segments.append(segment)
    return segments
