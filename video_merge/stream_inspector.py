"""
Stream Inspector Module

Wraps ffprobe to find out which elementary streams a media file carries.
Only the stream kinds are used by the merge pipeline; codec details are
ignored.
"""

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet

from .config import DEFAULT_PROBE_TIMEOUT
from .errors import ProbeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaInput:
    """A probed source file."""
    path: Path
    stream_kinds: FrozenSet[str]

    @property
    def has_audio(self) -> bool:
        return "audio" in self.stream_kinds

    @property
    def has_video(self) -> bool:
        return "video" in self.stream_kinds


def parse_stream_kinds(probe_output: Dict[str, Any]) -> FrozenSet[str]:
    """
    Collect the `codec_type` of every stream in ffprobe JSON output.

    Args:
        probe_output: Parsed `ffprobe -show_streams -print_format json` output

    Returns:
        Set of stream kinds, e.g. {'video', 'audio'}
    """
    streams = probe_output.get("streams") or []
    return frozenset(
        stream["codec_type"] for stream in streams
        if isinstance(stream, dict) and stream.get("codec_type")
    )


class StreamInspector:
    """
    ffprobe-based stream inspector.

    Example Usage:
        inspector = StreamInspector()
        media = inspector.inspect(Path("intro.mp4"))
        if media.has_audio:
            ...
    """

    def __init__(self, ffprobe_path: str = "ffprobe",
                 timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def is_available(self) -> bool:
        """Check if ffprobe can be found."""
        return shutil.which(self.ffprobe_path) is not None

    def inspect(self, path: Path) -> MediaInput:
        """
        Probe a file and report its stream kinds.

        Args:
            path: Media file to inspect

        Returns:
            MediaInput for the file

        Raises:
            ProbeError: If the file is missing, unreadable, not a recognized
                container, or carries no video stream
        """
        path = Path(path)
        if not path.is_file():
            raise ProbeError(f"File not found: {path.name}")

        probe_output = self._run_ffprobe(path)
        kinds = parse_stream_kinds(probe_output)
        if "video" not in kinds:
            raise ProbeError(f"No video stream found in {path.name}")

        media = MediaInput(path=path, stream_kinds=kinds)
        logger.debug(f"Probed {path.name}: streams={sorted(kinds)}")
        return media

    def _run_ffprobe(self, path: Path) -> Dict[str, Any]:
        cmd = [
            self.ffprobe_path,
            '-v', 'error',
            '-print_format', 'json',
            '-show_streams',
            str(path)
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True,
                                    check=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise ProbeError(f"ffprobe is not installed or not available in PATH: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out for {path.name} after {e.timeout}s") from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or f"exit code {e.returncode}"
            raise ProbeError(f"Could not read media file {path.name}: {detail}") from e

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError(f"Invalid ffprobe output for {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise ProbeError(f"Unexpected ffprobe output for {path.name}")
        return data
