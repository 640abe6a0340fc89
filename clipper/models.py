import enum
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_FONT_PATTERN = re.compile(r"^[A-Za-z0-9 _\-]{1,64}$")
MAX_CAPTION_LENGTH = 200


class SegmentOutcome(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class SegmentDescriptor:
    index: int
    start: float
    duration: float
    output_path: Optional[Path] = None
    outcome: SegmentOutcome = SegmentOutcome.PENDING
    error: Optional[str] = None

    @property
    def filename(self) -> str:
        return f"part{self.index}.mp4"

    @property
    def end(self) -> float:
        return self.start + self.duration


class OverlayConfig(BaseModel):
    """Text burned into every segment."""

    caption: Optional[str] = None
    font: str = "Arial"
    watermark: str = "@short.toons_"

    @field_validator("caption")
    @classmethod
    def _clean_caption(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = " ".join(value.split())
        if not cleaned:
            return None
        if len(cleaned) > MAX_CAPTION_LENGTH:
            raise ValueError(f"caption must be at most {MAX_CAPTION_LENGTH} characters")
        return cleaned

    @field_validator("font")
    @classmethod
    def _check_font(cls, value: str) -> str:
        value = value.strip()
        if not _FONT_PATTERN.fullmatch(value):
            raise ValueError("font may only contain letters, digits, spaces, '-' and '_'")
        return value


class ProcessingSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_segments: int = Field(0, alias="totalSegments")
    processed_clips: int = Field(0, alias="processedClips")
    failed_clips: int = Field(0, alias="failedClips")

    @property
    def success(self) -> bool:
        return self.processed_clips > 0

    def to_dict(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        payload["success"] = self.success
        return payload


class ClipInfo(BaseModel):
    path: str
    filename: str
    part: int
    url: str
