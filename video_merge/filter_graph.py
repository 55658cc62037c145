"""
Filter Graph Planner Module

This module decides the FFmpeg filter graph used to join an intro clip with a
main clip. The plan is a structured value (ordered stages with named pads);
textual serialization for `-filter_complex` happens only at the transcoder
boundary, so planning can be tested without running FFmpeg.

Video path (identical for every audio case):
    [0:v] normalize -> [v0]
    [1:v] normalize -> [v1]
    [v0][v1] concat=n=2:v=1:a=0 -> [v]

Audio path (branches on which inputs carry audio):
    intro yes, main yes -> [0:a]->[a_intro], [1:a]->[a_main], concat -> [a]
    intro yes, main no  -> [0:a]->[a_intro], mapped alone
    intro no,  main yes -> [1:a]->[a_main], mapped alone
    intro no,  main no  -> no audio stage, no audio output

When only one input has audio, that input's normalized track is used as is.
It does not extend across the other clip, so the output audio is shorter than
the merged video.

Usage Examples:
    planner = FilterGraphPlanner()
    plan = planner.plan(intro_has_audio=True, main_has_audio=False)
    plan.to_filter_complex()
    # '[0:v]fps=30,...[v0];[1:v]fps=30,...[v1];[v0][v1]concat=n=2:v=1:a=0[v];...'
    plan.output_labels()
    # ['v', 'a_intro']
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import DEFAULT_PROFILE, EncodingProfile
from .errors import PlanValidationError

INTRO_INPUT = 0
MAIN_INPUT = 1

VIDEO_OUT = "v"
AUDIO_OUT = "a"
INTRO_VIDEO = "v0"
MAIN_VIDEO = "v1"
INTRO_AUDIO = "a_intro"
MAIN_AUDIO = "a_main"

# Operation names
NORMALIZE_VIDEO = "normalize_video"
NORMALIZE_AUDIO = "normalize_audio"
CONCAT_VIDEO = "concat_video"
CONCAT_AUDIO = "concat_audio"

AUDIO_OPERATIONS = frozenset({NORMALIZE_AUDIO, CONCAT_AUDIO})

RAW_PAD_PATTERN = re.compile(r"^\d+:[vas]$")


def raw_pad(input_index: int, stream_kind: str) -> str:
    """Label of an unfiltered input stream, e.g. raw_pad(1, 'a') -> '1:a'."""
    return f"{input_index}:{stream_kind}"


def is_raw_pad(label: str) -> bool:
    return bool(RAW_PAD_PATTERN.match(label))


def bracket(label: str) -> str:
    return f"[{label}]"


@dataclass(frozen=True)
class FilterStage:
    """
    One filter chain in the graph.

    Attributes:
        operation: What the stage does (normalize_video, concat_audio, ...)
        inputs: Pad labels consumed, in order
        filters: FFmpeg filter expressions applied in sequence
        outputs: Pad labels produced, in order
    """
    operation: str
    inputs: Tuple[str, ...]
    filters: Tuple[str, ...]
    outputs: Tuple[str, ...]

    @property
    def is_audio(self) -> bool:
        return self.operation in AUDIO_OPERATIONS

    def render(self) -> str:
        """Serialize as one `-filter_complex` chain."""
        pads_in = "".join(bracket(label) for label in self.inputs)
        pads_out = "".join(bracket(label) for label in self.outputs)
        return f"{pads_in}{','.join(self.filters)}{pads_out}"


@dataclass(frozen=True)
class FilterGraphPlan:
    """
    Ordered filter stages plus the pads mapped into the output container.

    A plan without `final_audio_label` produces a video-only file.
    """
    stages: Tuple[FilterStage, ...]
    final_video_label: str
    final_audio_label: Optional[str] = None

    @property
    def has_audio(self) -> bool:
        return self.final_audio_label is not None

    @property
    def audio_stages(self) -> Tuple[FilterStage, ...]:
        return tuple(stage for stage in self.stages if stage.is_audio)

    def filter_chains(self) -> List[str]:
        return [stage.render() for stage in self.stages]

    def to_filter_complex(self) -> str:
        """Join all chains into a single `-filter_complex` argument."""
        return ";".join(self.filter_chains())

    def output_labels(self) -> List[str]:
        """Labels to pass to `-map`, video first."""
        labels = [self.final_video_label]
        if self.final_audio_label is not None:
            labels.append(self.final_audio_label)
        return labels

    def validate(self) -> "FilterGraphPlan":
        """
        Check pad-label discipline.

        Every derived label must be produced exactly once, every consumed
        label must be a raw input pad or produced by an earlier stage, and
        both mapped labels must exist.

        Returns:
            The plan itself, so calls can be chained

        Raises:
            PlanValidationError: If any rule is broken
        """
        produced = set()
        for index, stage in enumerate(self.stages):
            for label in stage.inputs:
                if not is_raw_pad(label) and label not in produced:
                    raise PlanValidationError(
                        f"Stage {index} ({stage.operation}) consumes undefined pad [{label}]"
                    )
            for label in stage.outputs:
                if is_raw_pad(label):
                    raise PlanValidationError(
                        f"Stage {index} ({stage.operation}) redefines raw input pad [{label}]"
                    )
                if label in produced:
                    raise PlanValidationError(
                        f"Stage {index} ({stage.operation}) produces duplicate pad [{label}]"
                    )
                produced.add(label)

        for label in self.output_labels():
            if label not in produced:
                raise PlanValidationError(f"Mapped pad [{label}] is never produced")
        return self


class FilterGraphPlanner:
    """
    Chooses the filter graph topology for an intro/main pair.

    The planner is pure: the same flags and profile always give an equal
    plan, and every combination of flags yields a valid plan.

    Example Usage:
        planner = FilterGraphPlanner(EncodingProfile(frame_rate=25))
        plan = planner.plan(True, True)
    """

    def __init__(self, profile: EncodingProfile = DEFAULT_PROFILE):
        self.profile = profile

    def plan(self, intro_has_audio: bool, main_has_audio: bool) -> FilterGraphPlan:
        """
        Build the plan for the given audio presence flags.

        Args:
            intro_has_audio: Whether the intro clip has an audio stream
            main_has_audio: Whether the main clip has an audio stream

        Returns:
            FilterGraphPlan with a video output and, when any input has
            audio, an audio output
        """
        stages = [
            self._normalize_video(INTRO_INPUT, INTRO_VIDEO),
            self._normalize_video(MAIN_INPUT, MAIN_VIDEO),
            FilterStage(
                operation=CONCAT_VIDEO,
                inputs=(INTRO_VIDEO, MAIN_VIDEO),
                filters=("concat=n=2:v=1:a=0",),
                outputs=(VIDEO_OUT,),
            ),
        ]

        audio_label = None
        if intro_has_audio and main_has_audio:
            stages.append(self._normalize_audio(INTRO_INPUT, INTRO_AUDIO))
            stages.append(self._normalize_audio(MAIN_INPUT, MAIN_AUDIO))
            stages.append(FilterStage(
                operation=CONCAT_AUDIO,
                inputs=(INTRO_AUDIO, MAIN_AUDIO),
                filters=("concat=n=2:v=0:a=1",),
                outputs=(AUDIO_OUT,),
            ))
            audio_label = AUDIO_OUT
        elif intro_has_audio:
            stages.append(self._normalize_audio(INTRO_INPUT, INTRO_AUDIO))
            audio_label = INTRO_AUDIO
        elif main_has_audio:
            stages.append(self._normalize_audio(MAIN_INPUT, MAIN_AUDIO))
            audio_label = MAIN_AUDIO

        return FilterGraphPlan(
            stages=tuple(stages),
            final_video_label=VIDEO_OUT,
            final_audio_label=audio_label,
        )

    def _normalize_video(self, input_index: int, output_label: str) -> FilterStage:
        p = self.profile
        return FilterStage(
            operation=NORMALIZE_VIDEO,
            inputs=(raw_pad(input_index, "v"),),
            filters=(
                f"fps={p.frame_rate}",
                f"format={p.pixel_format}",
                f"scale=w={p.width}:h={p.height}:force_original_aspect_ratio=decrease",
                f"pad={p.width}:{p.height}:(ow-iw)/2:(oh-ih)/2",
                "setsar=1",
                "setpts=PTS-STARTPTS",
            ),
            outputs=(output_label,),
        )

    def _normalize_audio(self, input_index: int, output_label: str) -> FilterStage:
        return FilterStage(
            operation=NORMALIZE_AUDIO,
            inputs=(raw_pad(input_index, "a"),),
            filters=(
                f"aresample={self.profile.audio_sample_rate}",
                "asetpts=PTS-STARTPTS",
            ),
            outputs=(output_label,),
        )


def describe_audio_strategy(intro_has_audio: bool, main_has_audio: bool) -> str:
    """Human readable summary of the audio branch, for logs."""
    if intro_has_audio and main_has_audio:
        return "both inputs have audio - concatenating audio streams"
    if intro_has_audio:
        return "only intro has audio - using intro audio"
    if main_has_audio:
        return "only main has audio - using main audio"
    return "no audio - video only output"


def plan_filter_graph(intro_has_audio: bool, main_has_audio: bool,
                      profile: EncodingProfile = DEFAULT_PROFILE) -> FilterGraphPlan:
    """Plan with a throwaway planner; see FilterGraphPlanner.plan."""
    return FilterGraphPlanner(profile).plan(intro_has_audio, main_has_audio)
