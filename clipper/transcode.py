import asyncio
import io
import json
import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .errors import JobCancelledError, MediaProbeError, SegmentTranscodeFailure, TranscoderLaunchError
from .models import OverlayConfig, ProcessingSummary, SegmentDescriptor, SegmentOutcome
from .registry import JobProcessHandle, JobRegistry, JobState
from .storage import format_file_size

logger = logging.getLogger("clipper.transcode")
struct_logger = structlog.get_logger("clipper.transcode")

PROBE_TIMEOUT_SECONDS = 30
LOG_TAIL_LINES = 20


@dataclass
class EncodingProfile:
    width: int = 540
    height: int = 960
    fps: int = 30
    crf: int = 18
    max_bitrate: str = "4000k"
    preset: str = "slower"
    codec: str = "libx264"
    profile: str = "high"
    level: str = "4.1"
    x264_params: str = "ref=4:me=umh:subme=8:trellis=2"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    ffmpeg_bin: str = "ffmpeg"

    @property
    def bufsize(self) -> str:
        match = re.fullmatch(r"(\d+)([kKmM]?)", self.max_bitrate)
        if not match:
            return self.max_bitrate
        return f"{int(match.group(1)) * 2}{match.group(2)}"


_OPTION_SPECIALS = re.compile(r"([\\':])")
_FILTERGRAPH_SPECIALS = re.compile(r"([\\'\[\],;])")


def escape_drawtext(text: str) -> str:
    """Escape a drawtext option value (first of ffmpeg's two unescape passes)."""
    text = "".join(ch for ch in text if ch.isprintable())
    return _OPTION_SPECIALS.sub(r"\\\1", text)


def escape_filtergraph(description: str) -> str:
    """Escape one filter description for embedding in a ``-vf`` chain."""
    return _FILTERGRAPH_SPECIALS.sub(r"\\\1", description)


def _drawtext(text: str, font: str, *, fontsize: int, y: str, fontcolor: str = "white", boxed: bool = True) -> str:
    options = [
        f"text={escape_drawtext(text)}",
        # text is literal, a bare % must not start a %{...} expansion
        "expansion=none",
        f"fontsize={fontsize}",
        f"fontcolor={fontcolor}",
        "x=(w-text_w)/2",
        f"y={y}",
        f"font={escape_drawtext(font)}",
    ]
    if boxed:
        options += [
            "box=1",
            "boxcolor=black@0.5",
            "boxborderw=5",
            "shadowcolor=black@0.5",
            "shadowx=2",
            "shadowy=2",
        ]
    return escape_filtergraph("drawtext=" + ":".join(options))


def build_filter_chain(segment: SegmentDescriptor, overlay: OverlayConfig, profile: EncodingProfile) -> str:
    w, h = profile.width, profile.height
    filters = [
        f"scale={w}:{h}:force_original_aspect_ratio=decrease",
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
        _drawtext(f"Part {segment.index}", overlay.font, fontsize=24, y="h*0.2"),
    ]
    if overlay.caption:
        filters.append(_drawtext(overlay.caption, overlay.font, fontsize=28, y="h*0.25"))
    if overlay.watermark:
        filters.append(
            _drawtext(overlay.watermark, overlay.font, fontsize=20, y="h*0.71", fontcolor="white@0.1", boxed=False)
        )
    filters.append(f"fps={profile.fps}")
    return ",".join(filters)


def build_segment_command(
    input_path: Path,
    segment: SegmentDescriptor,
    overlay: OverlayConfig,
    profile: EncodingProfile,
) -> List[str]:
    if segment.output_path is None:
        raise ValueError(f"segment {segment.index} has no output path")
    return [
        profile.ffmpeg_bin,
        "-hide_banner",
        "-y",
        "-ss",
        f"{segment.start:.3f}",
        "-i",
        str(input_path),
        "-t",
        f"{segment.duration:.3f}",
        "-vf",
        build_filter_chain(segment, overlay, profile),
        "-c:v",
        profile.codec,
        "-crf",
        str(profile.crf),
        "-maxrate",
        profile.max_bitrate,
        "-bufsize",
        profile.bufsize,
        "-preset",
        profile.preset,
        "-profile:v",
        profile.profile,
        "-level",
        profile.level,
        "-x264-params",
        profile.x264_params,
        "-pix_fmt",
        "yuv420p",
        "-r",
        str(profile.fps),
        "-c:a",
        profile.audio_codec,
        "-b:a",
        profile.audio_bitrate,
        "-movflags",
        "+faststart",
        str(segment.output_path),
    ]


class FFmpegProgressParser:
    _TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")

    def __init__(self, total_seconds: float, on_progress: Callable[[float], None], step: float = 10.0) -> None:
        self._total = max(total_seconds, 0.001)
        self._on_progress = on_progress
        self._step = step
        self._last_percent = -step

    def __call__(self, line: str) -> None:
        match = self._TIME_PATTERN.search(line)
        if not match:
            return
        hours, minutes, seconds = match.groups()
        try:
            elapsed = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            return

        percent = min(99.0, (elapsed / self._total) * 100.0)
        if percent < self._last_percent + self._step:
            return
        self._last_percent = percent
        self._on_progress(percent)


def _child_setup() -> None:
    signal.signal(signal.SIGTERM, signal.SIG_DFL)


async def run_ffmpeg(
    cmd: List[str],
    log_handle,
    *,
    process_handle: Optional[JobProcessHandle] = None,
    progress_parser: Optional[Callable[[str], None]] = None,
) -> int:
    """Run ffmpeg without blocking the event loop and return its exit code.

    No deadline is applied; a hung process is only reclaimed by cancelling the
    job that owns ``process_handle``.
    """

    async def _pump_stream(stream: Optional[asyncio.StreamReader], *, parse_progress: bool) -> None:
        if stream is None:
            return
        buffer = ""
        while True:
            # Small reads catch ffmpeg's \r-terminated stats lines
            chunk = await stream.read(1024)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="ignore")
            lines = re.split(r"[\r\n]", buffer)
            buffer = lines[-1]
            for line in lines[:-1]:
                if not line:
                    continue
                log_handle.write(line + "\n")
                if parse_progress and progress_parser is not None:
                    try:
                        progress_parser(line)
                    except Exception as exc:
                        logger.debug("Progress parser failed on line: %s - %s", line[:100], exc)
        if buffer:
            log_handle.write(buffer + "\n")

    subprocess_kwargs: Dict[str, Any] = {
        "stdin": asyncio.subprocess.DEVNULL,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
    }
    if os.name != "nt":
        subprocess_kwargs["preexec_fn"] = _child_setup

    try:
        proc = await asyncio.create_subprocess_exec(*cmd, **subprocess_kwargs)
    except Exception as exc:
        logger.error("Failed to launch ffmpeg command %s: %s", cmd[:10], exc)
        raise TranscoderLaunchError(f"Failed to start ffmpeg: {exc}") from exc

    if process_handle is not None:
        process_handle.process = proc
        if process_handle.cancelled:
            # cancelled between registration and spawn
            process_handle.kill()

    pump_tasks = [
        asyncio.create_task(_pump_stream(proc.stdout, parse_progress=False)),
        asyncio.create_task(_pump_stream(proc.stderr, parse_progress=True)),
    ]
    try:
        return_code = await proc.wait()
        try:
            await asyncio.wait_for(asyncio.gather(*pump_tasks), timeout=5)
        except asyncio.TimeoutError:
            pass
        return return_code
    except BaseException:
        if proc.returncode is None:
            proc.kill()
        raise
    finally:
        for task in pump_tasks:
            task.cancel()
        for task in pump_tasks:
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass


async def probe_duration(path: Path, ffprobe_bin: str = "ffprobe") -> float:
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(path),
    ]
    try:
        result = await asyncio.to_thread(
            subprocess.run,
            cmd,
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise MediaProbeError(f"ffprobe failed: {exc}") from exc

    if result.returncode != 0:
        raise MediaProbeError(f"ffprobe failed: {(result.stderr or '').strip()[:500]}")
    try:
        duration = float(json.loads(result.stdout or "{}")["format"]["duration"])
    except (KeyError, TypeError, ValueError) as exc:
        raise MediaProbeError("ffprobe did not report a duration") from exc
    if duration <= 0:
        raise MediaProbeError(f"invalid media duration: {duration}")
    return duration


def _log_tail(log_handle: io.StringIO) -> str:
    lines = log_handle.getvalue().splitlines()
    return "\n".join(lines[-LOG_TAIL_LINES:])


Runner = Callable[..., Awaitable[int]]


@dataclass
class JobOutcome:
    job_id: str
    segments: List[SegmentDescriptor]
    state: JobState
    summary: ProcessingSummary = field(default_factory=ProcessingSummary)

    @property
    def cancelled(self) -> bool:
        return self.state is JobState.CANCELLED

    @property
    def succeeded(self) -> List[SegmentDescriptor]:
        return [s for s in self.segments if s.outcome is SegmentOutcome.SUCCESS]


class TranscodeJob:
    """Run one ffmpeg invocation per segment, tolerating per-segment failures."""

    def __init__(
        self,
        registry: JobRegistry,
        job_id: str,
        profile: Optional[EncodingProfile] = None,
        runner: Optional[Runner] = None,
    ) -> None:
        self.registry = registry
        self.job_id = job_id
        self.profile = profile or EncodingProfile()
        self.runner = runner or run_ffmpeg

    async def run(
        self,
        input_path: Path,
        plan: List[SegmentDescriptor],
        overlay: OverlayConfig,
    ) -> JobOutcome:
        input_path = Path(input_path)
        owned: List[Path] = [input_path]
        cancelled = False

        for segment in plan:
            if not self.registry.is_active(self.job_id):
                cancelled = True
                break
            if segment.output_path is not None:
                owned.append(segment.output_path)
            try:
                await self._run_segment(input_path, segment, overlay, owned)
            except JobCancelledError:
                cancelled = True
                break
            except SegmentTranscodeFailure as exc:
                segment.outcome = SegmentOutcome.FAILURE
                segment.error = exc.reason
                struct_logger.warning(
                    "segment_failed", job_id=self.job_id, segment=segment.index, reason=exc.reason
                )

        if not cancelled and not self.registry.is_active(self.job_id):
            cancelled = True

        self._remove_input(input_path)

        summary = ProcessingSummary(
            total_segments=len(plan),
            processed_clips=sum(1 for s in plan if s.outcome is SegmentOutcome.SUCCESS),
            failed_clips=sum(1 for s in plan if s.outcome is SegmentOutcome.FAILURE),
        )
        if cancelled:
            state = JobState.CANCELLED
        elif summary.success:
            state = JobState.COMPLETED
        else:
            state = JobState.FAILED
        self.registry.mark(self.job_id, state)
        logger.info(
            "Job %s %s: %d/%d segments processed, %d failed",
            self.job_id,
            state.value,
            summary.processed_clips,
            summary.total_segments,
            summary.failed_clips,
        )
        return JobOutcome(job_id=self.job_id, segments=list(plan), state=state, summary=summary)

    async def _run_segment(
        self,
        input_path: Path,
        segment: SegmentDescriptor,
        overlay: OverlayConfig,
        owned: List[Path],
    ) -> None:
        cmd = build_segment_command(input_path, segment, overlay, self.profile)
        handle = JobProcessHandle()
        # registered before spawn so a cancel always sees the handle
        self.registry.register(self.job_id, handle, owned)

        def _report(percent: float) -> None:
            logger.info("Processing segment %d: %.2f%% done", segment.index, percent)

        log_handle = io.StringIO()
        logger.info("Started processing segment %d (%.1fs at %.1fs)", segment.index, segment.duration, segment.start)
        try:
            code = await self.runner(
                cmd,
                log_handle,
                process_handle=handle,
                progress_parser=FFmpegProgressParser(segment.duration, _report),
            )
        except TranscoderLaunchError as exc:
            raise SegmentTranscodeFailure(segment.index, exc.message) from exc
        finally:
            self.registry.detach(self.job_id)

        if code != 0:
            tail = _log_tail(log_handle)
            if tail:
                logger.warning("ffmpeg output for segment %d:\n%s", segment.index, tail)
            raise SegmentTranscodeFailure(segment.index, f"ffmpeg exited with code {code}")

        output = segment.output_path
        try:
            size = output.stat().st_size
        except OSError as exc:
            raise SegmentTranscodeFailure(segment.index, f"output missing: {exc}") from exc
        if size <= 0:
            raise SegmentTranscodeFailure(segment.index, "output is empty")

        segment.outcome = SegmentOutcome.SUCCESS
        logger.info("Segment %d processed (%s)", segment.index, format_file_size(size))

    def _remove_input(self, input_path: Path) -> None:
        try:
            size = input_path.stat().st_size
            os.unlink(input_path)
            logger.info("Cleaned up original file (%s)", format_file_size(size))
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Error cleaning up original file %s: %s", input_path, exc)
