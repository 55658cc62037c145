"""
Merge Orchestrator Module

Sequences one merge request through probing, planning, transcoding and
delivery, and owns failure translation and scratch-file cleanup.

Request lifecycle:
    received -> probing -> planning -> transcoding -> delivering -> completed
                   \\           \\             \\             \\
                    +-----------+-------------+-------------+--> failed

Cleanup runs once on entry to `completed` or `failed`, whichever stage the
request reached.

Usage Examples:
    orchestrator = MergeOrchestrator(MergeConfig.from_env())
    request = orchestrator.new_request(".mp4", ".mov")
    # ... write uploads to request.intro_path / request.main_path ...
    output = await orchestrator.process(request)
    # ... send output ...
    orchestrator.finish(request)
"""

import asyncio
import logging
import shutil
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .config import MergeConfig
from .errors import DeliveryError, InputError, MergeError, ProbeError, TranscodeError
from .file_utils import safe_cleanup
from .filter_graph import FilterGraphPlan, FilterGraphPlanner, describe_audio_strategy
from .stream_inspector import MediaInput, StreamInspector
from .transcoder import TranscodeInvoker

logger = logging.getLogger(__name__)

# Extra wait beyond the transcoder's own timeout before the request gives up on it.
TIMEOUT_GRACE_SECONDS = 10.0

# How long an aborted transcode thread may take to exit before cleanup runs anyway.
WORKER_EXIT_SECONDS = 10.0


class MergeState(Enum):
    """States of a merge request."""
    RECEIVED = "received"
    PROBING = "probing"
    PLANNING = "planning"
    TRANSCODING = "transcoding"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({MergeState.COMPLETED, MergeState.FAILED})


@dataclass
class MergeRequest:
    """Per-request state. Scratch filenames derive from request_id."""
    request_id: str
    intro_path: Path
    main_path: Path
    output_path: Path
    owns_inputs: bool = True
    state: MergeState = MergeState.RECEIVED
    intro: Optional[MediaInput] = None
    main: Optional[MediaInput] = None
    plan: Optional[FilterGraphPlan] = None
    error: Optional[MergeError] = None
    cleaned_up: bool = False
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    aborted: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def scratch_files(self) -> List[Path]:
        files = [self.output_path]
        if self.owns_inputs:
            files = [self.intro_path, self.main_path] + files
        return files


class MergeOrchestrator:
    """
    Runs merge requests against injected collaborators.

    The scratch directory comes from the configuration passed in; nothing is
    read from process-wide state. Requests share no mutable state besides
    that directory, and their filenames never collide.
    """

    def __init__(self, config: MergeConfig,
                 inspector: Optional[StreamInspector] = None,
                 planner: Optional[FilterGraphPlanner] = None,
                 invoker: Optional[TranscodeInvoker] = None):
        self.config = config
        self.temp_dir = config.ensure_temp_dir()
        self.inspector = inspector or StreamInspector(
            ffprobe_path=config.ffprobe_path,
            timeout=config.probe_timeout
        )
        self.planner = planner or FilterGraphPlanner(config.profile)
        self.invoker = invoker or TranscodeInvoker(
            ffmpeg_path=config.ffmpeg_path,
            profile=config.profile,
            timeout=config.transcode_timeout
        )

    def new_request(self, intro_suffix: str = ".mp4", main_suffix: str = ".mp4") -> MergeRequest:
        """Reserve scratch paths for a request whose inputs will be uploaded."""
        request_id = uuid.uuid4().hex
        return MergeRequest(
            request_id=request_id,
            intro_path=self.temp_dir / f"{request_id}_intro{intro_suffix}",
            main_path=self.temp_dir / f"{request_id}_main{main_suffix}",
            output_path=self.temp_dir / f"merged_{request_id}.mp4",
        )

    def request_for_files(self, intro_path: Path, main_path: Path) -> MergeRequest:
        """Request over existing files; cleanup leaves the inputs alone."""
        request_id = uuid.uuid4().hex
        return MergeRequest(
            request_id=request_id,
            intro_path=Path(intro_path),
            main_path=Path(main_path),
            output_path=self.temp_dir / f"merged_{request_id}.mp4",
            owns_inputs=False,
        )

    async def process(self, request: MergeRequest) -> Path:
        """
        Probe, plan and transcode one request.

        On success the request is left in `delivering`; the caller sends the
        output and then calls `finish`. On failure the request is moved to
        `failed`, cleaned up, and the error re-raised.

        Returns:
            Path of the merged file

        Raises:
            InputError: If either input file is missing
            ProbeError: If either input cannot be probed
            TranscodeError: If FFmpeg fails, times out or the merge is cancelled
        """
        try:
            self._require_inputs(request)

            self._transition(request, MergeState.PROBING)
            request.intro, request.main = await self._probe_both(request)
            logger.info(f"[{request.request_id}] intro audio: {'yes' if request.intro.has_audio else 'no'}")
            logger.info(f"[{request.request_id}] main audio: {'yes' if request.main.has_audio else 'no'}")

            self._transition(request, MergeState.PLANNING)
            request.plan = self.planner.plan(request.intro.has_audio, request.main.has_audio)
            logger.info(f"[{request.request_id}] audio strategy: "
                        f"{describe_audio_strategy(request.intro.has_audio, request.main.has_audio)}")
            logger.info(f"[{request.request_id}] merge filters: {len(request.plan.stages)} stages")

            self._transition(request, MergeState.TRANSCODING)
            await self._transcode(request)

            self._transition(request, MergeState.DELIVERING)
            return request.output_path

        except MergeError as e:
            self.fail(request, e)
            raise
        except asyncio.CancelledError:
            self._abort_process(request)
            self.fail(request, TranscodeError("Merge was cancelled"))
            raise
        except Exception as e:
            logger.exception(f"[{request.request_id}] unexpected error")
            self.fail(request, MergeError(str(e)))
            raise

    async def plan_for_files(self, intro_path: Path, main_path: Path
                             ) -> Tuple[MediaInput, MediaInput, FilterGraphPlan]:
        """Probe two files and return the plan without transcoding."""
        request = self.request_for_files(intro_path, main_path)
        self._require_inputs(request)
        intro, main = await self._probe_both(request)
        return intro, main, self.planner.plan(intro.has_audio, main.has_audio)

    async def merge_files(self, intro_path: Path, main_path: Path, output_path: Path) -> Path:
        """
        Merge two local files into `output_path`.

        The source files are never removed.
        """
        request = self.request_for_files(intro_path, main_path)
        result = await self.process(request)
        try:
            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(result), str(output_path))
        except OSError as e:
            self.finish(request, delivered=False, error=DeliveryError(str(e)))
            raise DeliveryError(f"Could not write {output_path}: {e}") from e
        self.finish(request)
        return output_path

    def finish(self, request: MergeRequest, delivered: bool = True,
               error: Optional[MergeError] = None):
        """Close a request after delivery and clean up its files."""
        if request.is_terminal:
            return
        if delivered:
            self._transition(request, MergeState.COMPLETED)
            self.cleanup(request)
        else:
            self.fail(request, error or DeliveryError("Delivery failed"))

    def fail(self, request: MergeRequest, error: MergeError):
        """Move a request to `failed` and clean up."""
        if request.is_terminal:
            return
        request.error = error
        logger.error(f"[{request.request_id}] {request.state.value} failed "
                     f"({error.category.value}): {error.message}")
        self._transition(request, MergeState.FAILED)
        self.cleanup(request)

    def cleanup(self, request: MergeRequest):
        """Remove the request's scratch files; runs at most once per request."""
        if request.cleaned_up:
            return
        request.cleaned_up = True
        removed = [safe_cleanup(path) for path in request.scratch_files()]
        if all(removed):
            logger.info(f"[{request.request_id}] temp files cleaned up")
        else:
            logger.warning(f"[{request.request_id}] cleanup incomplete")

    def _transition(self, request: MergeRequest, state: MergeState):
        logger.debug(f"[{request.request_id}] {request.state.value} -> {state.value}")
        request.state = state

    def _require_inputs(self, request: MergeRequest):
        missing = [name for name, path in (("intro", request.intro_path), ("main", request.main_path))
                   if path is None or not Path(path).is_file()]
        if missing:
            raise InputError(
                f'Missing files: {", ".join(missing)}. Send form fields "intro" and "main".'
            )

    async def _probe_both(self, request: MergeRequest) -> Tuple[MediaInput, MediaInput]:
        # Wait for both probes before looking at either result.
        results = await asyncio.gather(
            asyncio.to_thread(self.inspector.inspect, request.intro_path),
            asyncio.to_thread(self.inspector.inspect, request.main_path),
            return_exceptions=True
        )
        for result in results:
            if isinstance(result, MergeError):
                raise result
            if isinstance(result, Exception):
                raise ProbeError(f"Probe failed: {result}") from result
        intro, main = results
        return intro, main

    async def _transcode(self, request: MergeRequest):
        def on_start(process: subprocess.Popen):
            request.process = process
            # The request may have been aborted before the process existed.
            if request.aborted.is_set():
                self._abort_process(request)

        limit = None
        if self.config.transcode_timeout:
            limit = self.config.transcode_timeout + TIMEOUT_GRACE_SECONDS

        worker = asyncio.ensure_future(asyncio.to_thread(
            self.invoker.invoke,
            request.intro_path,
            request.main_path,
            request.plan,
            request.output_path,
            on_start
        ))
        try:
            await asyncio.wait_for(asyncio.shield(worker), timeout=limit)
        except asyncio.TimeoutError:
            self._abort_process(request)
            await self._wait_for_worker(request, worker)
            raise TranscodeError(f"Transcode did not finish within {limit:g}s")
        except asyncio.CancelledError:
            self._abort_process(request)
            await self._wait_for_worker(request, worker)
            raise
        finally:
            request.process = None

    async def _wait_for_worker(self, request: MergeRequest, worker: asyncio.Future):
        """Let an aborted transcode thread exit so cleanup sees its final output."""
        await asyncio.wait({worker}, timeout=WORKER_EXIT_SECONDS)
        if worker.done():
            if not worker.cancelled():
                worker.exception()
            return

        logger.warning(f"[{request.request_id}] transcode thread still running after abort")

        def _late_cleanup(future: asyncio.Future):
            if not future.cancelled():
                future.exception()
            safe_cleanup(request.output_path)

        worker.add_done_callback(_late_cleanup)

    def _abort_process(self, request: MergeRequest):
        request.aborted.set()
        process = request.process
        if process is not None and process.poll() is None:
            logger.warning(f"[{request.request_id}] killing ffmpeg (pid {process.pid})")
            process.kill()
