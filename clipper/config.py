import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class Settings:
    UPLOAD_DIR: Path
    CLIPS_DIR: Path
    LOGS_DIR: Path
    MAX_CONCURRENT_JOBS: int
    RETENTION_SECONDS: int
    CLEANUP_INTERVAL_SECONDS: int
    MAX_STORAGE_GB: float
    SEGMENT_SECONDS: int
    MAX_FILE_SIZE_MB: int
    UPLOAD_CHUNK_SIZE: int
    OUTPUT_WIDTH: int
    OUTPUT_HEIGHT: int
    VIDEO_FPS: int
    VIDEO_CRF: int
    VIDEO_MAX_BITRATE: str
    VIDEO_PRESET: str
    WATERMARK_TEXT: str
    DEFAULT_FONT: str
    DISCONNECT_POLL_SECONDS: float
    FFMPEG_BIN: str
    FFPROBE_BIN: str

    @property
    def quota_bytes(self) -> int:
        return int(self.MAX_STORAGE_GB * 1024 * 1024 * 1024)

    @property
    def max_file_size_bytes(self) -> int:
        return self.MAX_FILE_SIZE_MB * 1024 * 1024

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_float(name: str, default: float) -> float:
            return float(os.getenv(name, str(default)))

        concurrency = env_int("MAX_CONCURRENT_JOBS", 2)
        if concurrency < 1:
            raise ValueError("MAX_CONCURRENT_JOBS must be >= 1")

        retention = env_int("RETENTION_SECONDS", 5 * 60)
        if retention < 0:
            raise ValueError("RETENTION_SECONDS must be >= 0")

        segment = env_int("SEGMENT_SECONDS", 120)
        if segment < 1:
            raise ValueError("SEGMENT_SECONDS must be >= 1")

        crf = env_int("VIDEO_CRF", 18)
        if not (0 <= crf <= 51):
            raise ValueError("VIDEO_CRF must be 0-51")

        storage_gb = env_float("MAX_STORAGE_GB", 10)
        if storage_gb <= 0:
            raise ValueError("MAX_STORAGE_GB must be > 0")

        return cls(
            UPLOAD_DIR=env_path("UPLOAD_DIR", "uploads"),
            CLIPS_DIR=env_path("CLIPS_DIR", "clips"),
            LOGS_DIR=env_path("LOGS_DIR", "logs"),
            MAX_CONCURRENT_JOBS=concurrency,
            RETENTION_SECONDS=retention,
            CLEANUP_INTERVAL_SECONDS=env_int("CLEANUP_INTERVAL_SECONDS", 5 * 60),
            MAX_STORAGE_GB=storage_gb,
            SEGMENT_SECONDS=segment,
            MAX_FILE_SIZE_MB=env_int("MAX_FILE_SIZE_MB", 5 * 1024),
            UPLOAD_CHUNK_SIZE=env_int("UPLOAD_CHUNK_SIZE", 1024 * 1024),
            OUTPUT_WIDTH=env_int("OUTPUT_WIDTH", 540),
            OUTPUT_HEIGHT=env_int("OUTPUT_HEIGHT", 960),
            VIDEO_FPS=env_int("VIDEO_FPS", 30),
            VIDEO_CRF=crf,
            VIDEO_MAX_BITRATE=os.getenv("VIDEO_MAX_BITRATE", "4000k"),
            VIDEO_PRESET=os.getenv("VIDEO_PRESET", "slower"),
            WATERMARK_TEXT=os.getenv("WATERMARK_TEXT", "@short.toons_"),
            DEFAULT_FONT=os.getenv("DEFAULT_FONT", "Arial"),
            DISCONNECT_POLL_SECONDS=env_float("DISCONNECT_POLL_SECONDS", 1.0),
            FFMPEG_BIN=os.getenv("FFMPEG_BIN", "ffmpeg"),
            FFPROBE_BIN=os.getenv("FFPROBE_BIN", "ffprobe"),
        )
