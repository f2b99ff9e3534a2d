import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

# Local frontend dev servers, allowed alongside FRONTEND_URL.
DEV_ORIGINS = ("http://localhost:5173", "http://localhost:3000")


@dataclass
class Settings:
    HOST: str
    PORT: int
    UPLOADS_DIR: Path
    PROCESSED_DIR: Path
    LOGS_DIR: Path
    ALLOWED_ORIGINS: List[str]
    MAX_CONCURRENT_JOBS: int
    RETENTION_HOURS: float
    CLEANUP_INTERVAL_SECONDS: int
    CLEANUP_INITIAL_DELAY_SECONDS: int
    MAX_FILE_SIZE_MB: int
    MAX_UPLOAD_FILES: int
    MAX_MERGE_INPUTS: int
    UPLOAD_CHUNK_SIZE: int
    FFMPEG_BIN: str
    FFPROBE_BIN: str
    FONT_FILE: Optional[str]
    OUTPUT_MAX_WIDTH: int
    OUTPUT_CRF: int
    OUTPUT_PRESET: str
    OUTPUT_MAXRATE: str
    OUTPUT_BUFSIZE: str
    OUTPUT_THREADS: int
    OUTPUT_AUDIO_RATE: int
    OUTPUT_AUDIO_CHANNELS: int
    MERGE_WIDTH: int
    MERGE_HEIGHT: int
    MERGE_FPS: int
    MERGE_SAMPLE_RATE: int

    @property
    def max_file_size_bytes(self) -> int:
        return self.MAX_FILE_SIZE_MB * 1024 * 1024

    @property
    def retention_seconds(self) -> float:
        return self.RETENTION_HOURS * 3600

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_float(name: str, default: float) -> float:
            return float(os.getenv(name, str(default)))

        def env_str(name: str, default: str) -> str:
            value = os.getenv(name, "").strip()
            return value or default

        max_jobs = env_int("MAX_CONCURRENT_JOBS", 1)
        if max_jobs < 1:
            raise ValueError("MAX_CONCURRENT_JOBS must be >= 1")

        retention = env_float("RETENTION_HOURS", 24)
        if retention <= 0:
            raise ValueError("RETENTION_HOURS must be > 0")

        max_size = env_int("MAX_FILE_SIZE_MB", 25)
        if max_size < 1:
            raise ValueError("MAX_FILE_SIZE_MB must be >= 1")

        merge_inputs = env_int("MAX_MERGE_INPUTS", 10)
        if merge_inputs < 2:
            raise ValueError("MAX_MERGE_INPUTS must be >= 2")

        origins_raw = os.getenv("ALLOWED_ORIGINS", "")
        origins = [item.strip() for item in origins_raw.split(",") if item.strip()]
        frontend = os.getenv("FRONTEND_URL", "").strip()
        if frontend:
            for origin in (frontend,) + DEV_ORIGINS:
                if origin not in origins:
                    origins.append(origin)
        if not origins:
            origins = ["*"]

        return cls(
            HOST=env_str("HOST", "0.0.0.0"),
            PORT=env_int("PORT", 5000),
            UPLOADS_DIR=env_path("UPLOADS_DIR", "data/uploads"),
            PROCESSED_DIR=env_path("PROCESSED_DIR", "data/processed"),
            LOGS_DIR=env_path("LOGS_DIR", "data/logs"),
            ALLOWED_ORIGINS=origins,
            MAX_CONCURRENT_JOBS=max_jobs,
            RETENTION_HOURS=retention,
            CLEANUP_INTERVAL_SECONDS=env_int("CLEANUP_INTERVAL_SECONDS", 3600),
            CLEANUP_INITIAL_DELAY_SECONDS=env_int("CLEANUP_INITIAL_DELAY_SECONDS", 30),
            MAX_FILE_SIZE_MB=max_size,
            MAX_UPLOAD_FILES=env_int("MAX_UPLOAD_FILES", 3),
            MAX_MERGE_INPUTS=merge_inputs,
            UPLOAD_CHUNK_SIZE=env_int("UPLOAD_CHUNK_SIZE", 1024 * 1024),
            FFMPEG_BIN=env_str("FFMPEG_BIN", "ffmpeg"),
            FFPROBE_BIN=env_str("FFPROBE_BIN", "ffprobe"),
            FONT_FILE=os.getenv("FONT_FILE") or None,
            OUTPUT_MAX_WIDTH=env_int("OUTPUT_MAX_WIDTH", 480),
            OUTPUT_CRF=env_int("OUTPUT_CRF", 35),
            OUTPUT_PRESET=env_str("OUTPUT_PRESET", "ultrafast"),
            OUTPUT_MAXRATE=env_str("OUTPUT_MAXRATE", "500k"),
            OUTPUT_BUFSIZE=env_str("OUTPUT_BUFSIZE", "250k"),
            OUTPUT_THREADS=env_int("OUTPUT_THREADS", 1),
            OUTPUT_AUDIO_RATE=env_int("OUTPUT_AUDIO_RATE", 22050),
            OUTPUT_AUDIO_CHANNELS=env_int("OUTPUT_AUDIO_CHANNELS", 1),
            MERGE_WIDTH=env_int("MERGE_WIDTH", 854),
            MERGE_HEIGHT=env_int("MERGE_HEIGHT", 480),
            MERGE_FPS=env_int("MERGE_FPS", 24),
            MERGE_SAMPLE_RATE=env_int("MERGE_SAMPLE_RATE", 44100),
        )
