"""
Error types for the clip pipeline.

Every error that can reach a client derives from ClipperError and carries the
HTTP status it maps to. Segment-level failures are recorded on the segment and
never propagate out of a job.
"""

from typing import Any, Dict, Optional


class ClipperError(Exception):
    """Base exception for all pipeline failures."""

    status_code = 500

    def __init__(self, message: str, *, summary: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.summary = summary


class AdmissionRejected(ClipperError):
    """Raised when the concurrency ceiling is reached."""

    status_code = 429

    def __init__(self, message: str = "Server is busy. Please try again later."):
        super().__init__(message)


class QuotaExceeded(ClipperError):
    """Raised when an upload would push storage over the quota."""

    status_code = 507

    def __init__(self, message: str = "Server storage limit reached. Please try again later."):
        super().__init__(message)


class NoUploadError(ClipperError):
    status_code = 400

    def __init__(self, message: str = "No video file uploaded"):
        super().__init__(message)


class InvalidUploadError(ClipperError):
    status_code = 400


class JobNotFoundError(ClipperError):
    status_code = 404

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobCancelledError(ClipperError):
    """Raised when a job is no longer registered, i.e. it was cancelled."""

    status_code = 409

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled")


class ClientDisconnect(ClipperError):
    """The client went away and its job was cancelled."""

    status_code = 499

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Client disconnected during job {job_id}")


class TranscoderLaunchError(ClipperError):
    """Raised when the ffmpeg binary cannot be started."""


class MediaProbeError(ClipperError):
    """Raised when ffprobe cannot report a usable duration."""


class SegmentTranscodeFailure(ClipperError):
    """A single segment failed. Recorded on the segment, never raised out of a job."""

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"Segment {index} failed: {reason}")


class TotalFailure(ClipperError):
    """Every planned segment failed."""

    def __init__(self, summary: Dict[str, Any]):
        super().__init__("Error processing video: all segments failed", summary=summary)


class UploadTooLargeError(ClipperError):
    status_code = 413

    def __init__(self, message: str = "File too large"):
        super().__init__(message)
