"""
Transcode Invoker Module

Runs FFmpeg with a planned filter graph and the fixed output encoding profile.

Output mapping follows the plan: the final video pad is always mapped, the
final audio pad (and the audio encoder options) only when the plan has one.
"""

import logging
import shutil
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Callable, List, Optional

from .config import DEFAULT_PROFILE, DEFAULT_TRANSCODE_TIMEOUT, EncodingProfile
from .errors import TranscodeError
from .file_utils import safe_cleanup
from .filter_graph import FilterGraphPlan, bracket

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class TranscodeInvoker:
    """
    FFmpeg wrapper for the two-input merge.

    Example Usage:
        invoker = TranscodeInvoker(progress_callback=print)
        invoker.invoke(Path("intro.mp4"), Path("main.mp4"), plan, Path("out.mp4"))
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg",
                 profile: EncodingProfile = DEFAULT_PROFILE,
                 timeout: Optional[float] = DEFAULT_TRANSCODE_TIMEOUT,
                 progress_callback: Optional[Callable[[str], None]] = None):
        self.ffmpeg_path = ffmpeg_path
        self.profile = profile
        self.timeout = timeout
        self.progress_callback = progress_callback or (lambda x: None)

    def is_available(self) -> bool:
        """Check if ffmpeg can be found."""
        return shutil.which(self.ffmpeg_path) is not None

    def output_options(self, plan: FilterGraphPlan) -> List[str]:
        """Map directives and encoder options for a plan."""
        p = self.profile
        options = ['-map', bracket(plan.final_video_label)]
        if plan.has_audio:
            options += ['-map', bracket(plan.final_audio_label)]
        options += [
            '-c:v', p.video_codec,
            '-preset', p.video_preset,
            '-crf', str(p.video_crf),
        ]
        if plan.has_audio:
            options += ['-c:a', p.audio_codec, '-b:a', p.audio_bitrate]
        options += ['-movflags', p.movflags]
        return options

    def build_command(self, intro_path: Path, main_path: Path,
                      plan: FilterGraphPlan, output_path: Path) -> List[str]:
        """Full FFmpeg argument list, intro as input 0 and main as input 1."""
        return [
            self.ffmpeg_path, '-hide_banner', '-y',
            '-i', str(intro_path),
            '-i', str(main_path),
            '-filter_complex', plan.to_filter_complex(),
            *self.output_options(plan),
            str(output_path)
        ]

    def invoke(self, intro_path: Path, main_path: Path, plan: FilterGraphPlan,
               output_path: Path,
               on_start: Optional[Callable[[subprocess.Popen], None]] = None) -> Path:
        """
        Run FFmpeg and write the merged file.

        Args:
            intro_path: First input
            main_path: Second input
            plan: Filter graph plan to execute
            output_path: Where to write the result
            on_start: Called with the running process, so the caller can kill it

        Returns:
            output_path on success

        Raises:
            TranscodeError: On spawn failure, timeout, or non-zero exit
        """
        output_path = Path(output_path)
        cmd = self.build_command(intro_path, main_path, plan, output_path)
        logger.debug(f"Running: {' '.join(cmd)}")
        self.progress_callback("Running FFmpeg to merge videos...")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors='replace'
            )
        except OSError as e:
            raise TranscodeError(f"FFmpeg could not be started: {e}") from e

        if on_start:
            on_start(process)

        timed_out = threading.Event()

        def _kill():
            timed_out.set()
            process.kill()

        timer = None
        if self.timeout:
            timer = threading.Timer(self.timeout, _kill)
            timer.daemon = True
            timer.start()

        tail = deque(maxlen=STDERR_TAIL_LINES)
        try:
            for line in process.stderr:
                line = line.rstrip()
                if not line:
                    continue
                tail.append(line)
                logger.debug(f"ffmpeg: {line}")
                self.progress_callback(line)
            returncode = process.wait()
        finally:
            if timer:
                timer.cancel()
            if process.poll() is None:
                process.kill()
            process.stderr.close()

        if timed_out.is_set():
            safe_cleanup(output_path)
            raise TranscodeError(f"FFmpeg timed out after {self.timeout:g}s")

        if returncode != 0:
            safe_cleanup(output_path)
            detail = "\n".join(tail) or f"exit code {returncode}"
            raise TranscodeError(f"FFmpeg failed: {detail}")

        if not output_path.exists():
            raise TranscodeError("FFmpeg reported success but produced no output file")

        self.progress_callback("Video merge completed successfully")
        return output_path
