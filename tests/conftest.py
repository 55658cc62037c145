import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from video_merge.config import MergeConfig
from video_merge.errors import ProbeError, TranscodeError
from video_merge.orchestrator import MergeOrchestrator
from video_merge.stream_inspector import MediaInput


def input_role(path: Path) -> str:
    return "intro" if "intro" in Path(path).name else "main"


class FakeInspector:
    """Stands in for ffprobe; audio presence is configured per role."""

    def __init__(self, audio: Optional[Dict[str, bool]] = None,
                 fail_on: Optional[str] = None, barrier: Optional[threading.Barrier] = None):
        self.audio = audio or {"intro": True, "main": True}
        self.fail_on = fail_on
        self.barrier = barrier
        self.calls: List[Path] = []
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return True

    def inspect(self, path: Path) -> MediaInput:
        with self._lock:
            self.calls.append(Path(path))
        if self.barrier is not None:
            self.barrier.wait()
        role = input_role(path)
        if not Path(path).is_file():
            raise ProbeError(f"File not found: {Path(path).name}")
        if role == self.fail_on:
            raise ProbeError(f"Could not read media file {Path(path).name}")
        kinds = {"video", "audio"} if self.audio.get(role) else {"video"}
        return MediaInput(path=Path(path), stream_kinds=frozenset(kinds))


class FakeInvoker:
    """Stands in for ffmpeg; writes a small output file."""

    def __init__(self, fail_with: Optional[str] = None, output_bytes: bytes = b"merged-video"):
        self.fail_with = fail_with
        self.output_bytes = output_bytes
        self.calls = []

    def is_available(self) -> bool:
        return True

    def invoke(self, intro_path, main_path, plan, output_path, on_start=None):
        self.calls.append((Path(intro_path), Path(main_path), plan, Path(output_path)))
        Path(output_path).write_bytes(self.output_bytes)
        if self.fail_with:
            # A real failed run leaves a partial file behind until cleanup.
            raise TranscodeError(self.fail_with)
        return Path(output_path)


class BlockingProcess:
    """Popen look-alike that runs until killed."""

    pid = 4242

    def __init__(self):
        self.killed = threading.Event()
        self.returncode = None

    def poll(self):
        return self.returncode

    def kill(self):
        self.returncode = -9
        self.killed.set()


class BlockingInvoker:
    """Invoker whose process never finishes on its own.

    `spawn_delay` holds the worker thread back before the process exists.
    """

    def __init__(self, spawn_delay: float = 0.0):
        self.process = BlockingProcess()
        self.spawn_delay = spawn_delay
        self.started = threading.Event()
        self.finished = threading.Event()

    def is_available(self) -> bool:
        return True

    def invoke(self, intro_path, main_path, plan, output_path, on_start=None):
        try:
            time.sleep(self.spawn_delay)
            if on_start:
                on_start(self.process)
            Path(output_path).write_bytes(b"partial")
            self.started.set()
            self.process.killed.wait(timeout=5)
            raise TranscodeError("FFmpeg failed: killed")
        finally:
            self.finished.set()


@pytest.fixture
def config(tmp_path) -> MergeConfig:
    return MergeConfig(
        temp_dir=tmp_path / "scratch",
        probe_timeout=5,
        transcode_timeout=30,
    )


@pytest.fixture
def make_orchestrator(config):
    def _make(inspector=None, invoker=None) -> MergeOrchestrator:
        return MergeOrchestrator(
            config,
            inspector=inspector or FakeInspector(),
            invoker=invoker or FakeInvoker()
        )
    return _make


@pytest.fixture
def source_files(tmp_path):
    """An intro and a main file outside the scratch directory."""
    source_dir = tmp_path / "sources"
    source_dir.mkdir()
    intro = source_dir / "intro.mp4"
    main = source_dir / "main.mp4"
    intro.write_bytes(b"intro-bytes")
    main.write_bytes(b"main-bytes")
    return intro, main


def write_inputs(request, intro: bytes = b"intro-bytes", main: bytes = b"main-bytes"):
    request.intro_path.write_bytes(intro)
    request.main_path.write_bytes(main)


def completed_process(stdout: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")
