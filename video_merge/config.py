"""
Configuration Management Module

This module provides the runtime configuration for the Video Merge service.
Settings are read from environment variables, optionally loaded from a
project-local `.env` file. The encoding profile is a fixed preset and is not
environment-overridable.

Environment Variables:
    PORT, HOST                       - listening address for the API server
    VIDEO_MERGE_TMP_DIR              - scratch directory for uploads and outputs
    FFMPEG_PATH, FFPROBE_PATH        - external tool locations
    PROBE_TIMEOUT, TRANSCODE_TIMEOUT - seconds before the external tool is killed
    MAX_UPLOAD_SIZE                  - per-file upload limit in bytes
    CORS_ORIGINS                     - comma separated allowed origins
    LOG_LEVEL                        - root logging level
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_PORT = 3000
DEFAULT_PROBE_TIMEOUT = 30.0
DEFAULT_TRANSCODE_TIMEOUT = 900.0
DEFAULT_MAX_UPLOAD_SIZE = 500 * 1024 * 1024  # 500MB

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class EncodingProfile:
    """Fixed normalization and output encoding preset."""
    frame_rate: int = 30
    pixel_format: str = "yuv420p"
    width: int = 1920
    height: int = 1080
    audio_sample_rate: int = 48000
    video_codec: str = "libx264"
    video_preset: str = "veryfast"
    video_crf: int = 20
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"
    movflags: str = "+faststart"


DEFAULT_PROFILE = EncodingProfile()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {value!r}, using {default}")
        return default


def default_temp_dir() -> Path:
    """Platform temp directory with a service-specific subfolder."""
    return Path(tempfile.gettempdir()) / "video-merge-api"


@dataclass
class MergeConfig:
    """
    Runtime settings for the merge service.

    Example Usage:
        config = MergeConfig.from_env()
        config.ensure_temp_dir()
        print(config.port, config.temp_dir)
    """
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    temp_dir: Path = field(default_factory=default_temp_dir)
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    transcode_timeout: float = DEFAULT_TRANSCODE_TIMEOUT
    max_upload_size: int = DEFAULT_MAX_UPLOAD_SIZE
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    profile: EncodingProfile = DEFAULT_PROFILE

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "MergeConfig":
        """
        Build a configuration from environment variables.

        Args:
            env_file: Optional .env file to load first (defaults to the project's .env)

        Returns:
            MergeConfig populated from the environment
        """
        env_path = env_file or PROJECT_ROOT / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        temp_dir = os.getenv("VIDEO_MERGE_TMP_DIR")
        origins = os.getenv("CORS_ORIGINS", "*")

        return cls(
            port=_env_int("PORT", DEFAULT_PORT),
            host=os.getenv("HOST", "0.0.0.0"),
            temp_dir=Path(temp_dir) if temp_dir else default_temp_dir(),
            ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=os.getenv("FFPROBE_PATH", "ffprobe"),
            probe_timeout=_env_float("PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT),
            transcode_timeout=_env_float("TRANSCODE_TIMEOUT", DEFAULT_TRANSCODE_TIMEOUT),
            max_upload_size=_env_int("MAX_UPLOAD_SIZE", DEFAULT_MAX_UPLOAD_SIZE),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def ensure_temp_dir(self) -> Path:
        """Create the scratch directory if needed and return it."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        return self.temp_dir


def setup_logging(level: str = "INFO", verbose: bool = False):
    """Setup basic logging configuration."""
    if verbose:
        level = "DEBUG"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
