"""Operation catalog: maps an edit request onto an ffmpeg filter graph.

Everything here is pure. Facts that need the filesystem or ffprobe (font
location, source duration, which merge inputs carry audio) are looked up by
the caller and handed in through ``params``.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import ValidationError
from .filtergraph import FilterChain, FilterGraph, FilterStage, chain, format_number, stage


class Operation(str, Enum):
    TRIM = "trim"
    FILTER = "filter"
    TEXT = "text"
    MERGE = "merge"
    AUDIO = "audio"


class AudioOperation(str, Enum):
    MUTE = "mute"
    VOLUME = "volume"
    FADE_IN = "fadeIn"
    FADE_OUT = "fadeOut"
    EXTRACT = "extract"


FADE_SECONDS = 3.0
DEFAULT_SOURCE_DURATION = 30.0
MAX_VOLUME = 10.0
MAX_TEXT_LENGTH = 500
MAX_FONT_SIZE = 512

_EMBOSS_KERNEL = "-2 -1 0 -1 1 1 0 1 2"

FILTER_PRESETS: Dict[str, FilterStage] = {
    "grayscale": stage("colorchannelmixer", ".3", ".4", ".3", "0", ".3", ".4", ".3", "0", ".3", ".4", ".3"),
    "sepia": stage("colorchannelmixer", ".393", ".769", ".189", "0", ".349", ".686", ".168", "0", ".272", ".534", ".131"),
    "blur": stage("boxblur", 5, 1),
    "sharpen": stage("unsharp", 5, 5, "1.0", 5, 5, "0.0"),
    "brightness": stage("eq", brightness=0.15),
    "contrast": stage("eq", contrast=1.5),
    "saturate": stage("eq", saturation=2.0),
    "vignette": stage("vignette", "PI/4"),
    "vintage": stage("curves", "vintage"),
    "negative": stage("negate"),
    "mirror": stage("hflip"),
    "emboss": stage("convolution", _EMBOSS_KERNEL, _EMBOSS_KERNEL, _EMBOSS_KERNEL, _EMBOSS_KERNEL, 5, 5, 5, 5, 0, 128),
}

_HEX_COLOR_RE = re.compile(r"^#([0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_COLOR_RE = re.compile(r"^(0x[0-9a-fA-F]{6}([0-9a-fA-F]{2})?|[A-Za-z]{3,32})(@(0(\.\d+)?|1(\.0+)?))?$")
_POSITION_RE = re.compile(r"^[A-Za-z0-9_+\-*/().,\s]{1,100}$")


@dataclass(frozen=True)
class OutputProfile:
    """Fixed low-resource encoding preset applied to every output."""

    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "ultrafast"
    crf: int = 35
    threads: int = 1
    maxrate: str = "500k"
    bufsize: str = "250k"
    max_width: int = 480
    audio_channels: int = 1
    audio_rate: int = 22050
    mp3_bitrate: str = "128k"

    @classmethod
    def from_settings(cls, settings: Any) -> "OutputProfile":
        return cls(
            preset=settings.OUTPUT_PRESET,
            crf=settings.OUTPUT_CRF,
            threads=settings.OUTPUT_THREADS,
            maxrate=settings.OUTPUT_MAXRATE,
            bufsize=settings.OUTPUT_BUFSIZE,
            max_width=settings.OUTPUT_MAX_WIDTH,
            audio_channels=settings.OUTPUT_AUDIO_CHANNELS,
            audio_rate=settings.OUTPUT_AUDIO_RATE,
        )

    def scale_stage(self) -> FilterStage:
        # Never upscale; keep width even for yuv420p.
        return stage("scale", w=f"trunc(min({self.max_width},iw)/2)*2", h=-2)

    def video_args(self) -> List[str]:
        return [
            "-c:v", self.video_codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-threads", str(self.threads),
            "-maxrate", self.maxrate,
            "-bufsize", self.bufsize,
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
        ]

    def audio_args(self) -> List[str]:
        return [
            "-c:a", self.audio_codec,
            "-ac", str(self.audio_channels),
            "-ar", str(self.audio_rate),
        ]

    def mp3_args(self) -> List[str]:
        return [
            "-c:a", "libmp3lame",
            "-b:a", self.mp3_bitrate,
            "-threads", str(self.threads),
        ]


@dataclass(frozen=True)
class MergeTarget:
    width: int = 854
    height: int = 480
    fps: int = 24
    sample_rate: int = 44100


@dataclass(frozen=True)
class MergeInput:
    has_audio: bool = True
    duration: Optional[float] = None


@dataclass
class TransformGraph:
    operation: str
    prefix: str
    extension: str = ".mp4"
    input_count: int = 1
    input_options: List[List[str]] = field(default_factory=list)
    video_filters: FilterChain = field(default_factory=FilterChain)
    audio_filters: FilterChain = field(default_factory=FilterChain)
    complex_filter: FilterGraph = field(default_factory=FilterGraph)
    maps: List[str] = field(default_factory=list)
    output_options: List[str] = field(default_factory=list)
    expected_duration: Optional[float] = None

    def options_for_input(self, index: int) -> List[str]:
        if index < len(self.input_options):
            return list(self.input_options[index])
        return []

    def filter_expressions(self) -> List[str]:
        rendered = []
        for graph in (self.complex_filter, self.video_filters, self.audio_filters):
            if graph:
                rendered.append(graph.render())
        return rendered


def _number(
    params: Mapping[str, Any],
    key: str,
    default: Optional[float] = None,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> Optional[float]:
    raw = params.get(key)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number", details={"value": str(raw)}) from None
    if not math.isfinite(value):
        raise ValidationError(f"{key} must be a finite number")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {format_number(minimum)}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{key} must be <= {format_number(maximum)}")
    return value


def normalize_color(value: Any) -> str:
    color = str(value or "white").strip()
    match = _HEX_COLOR_RE.match(color)
    if match:
        return "0x" + match.group(1)
    if not _COLOR_RE.match(color):
        raise ValidationError(f"Invalid font color: {color}")
    return color


def _position(value: Any, default: str, key: str) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number or expression")
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not _POSITION_RE.match(text):
        raise ValidationError(f"Invalid {key} position expression")
    return text


def build_trim(params: Mapping[str, Any], profile: OutputProfile) -> TransformGraph:
    start = _number(params, "start_time", 0.0, minimum=0.0)
    end = _number(params, "end_time", None, minimum=0.0)
    duration = max(0.0, end - start) if end is not None else 0.0

    output = profile.video_args() + profile.audio_args()
    if duration > 0:
        output += ["-t", format_number(duration)]

    return TransformGraph(
        operation=Operation.TRIM.value,
        prefix="trimmed",
        input_options=[["-ss", format_number(start)]],
        video_filters=chain([profile.scale_stage()]),
        output_options=output,
        expected_duration=duration or None,
    )


def build_filter(params: Mapping[str, Any], profile: OutputProfile) -> TransformGraph:
    name = str(params.get("filter") or "").strip()
    if not name:
        raise ValidationError("filter required")
    preset = FILTER_PRESETS.get(name)
    if preset is None:
        raise ValidationError(f"Unknown filter: {name}", details={"available": sorted(FILTER_PRESETS)})

    return TransformGraph(
        operation=Operation.FILTER.value,
        prefix="filtered",
        video_filters=chain([replace(preset), profile.scale_stage()]),
        output_options=profile.video_args() + profile.audio_args(),
    )


def build_text(params: Mapping[str, Any], profile: OutputProfile) -> TransformGraph:
    text = params.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("text required")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(f"text must be at most {MAX_TEXT_LENGTH} characters")

    font_size = _number(params, "font_size", 32, minimum=1, maximum=MAX_FONT_SIZE)
    options: Dict[str, Any] = {}
    font_file = params.get("font_file")
    if font_file:
        options["fontfile"] = str(font_file).replace("\\", "/")
    options.update(
        text=text,
        expansion="none",
        fontsize=int(font_size),
        fontcolor=normalize_color(params.get("font_color")),
        x=_position(params.get("x"), "(w-text_w)/2", "x"),
        y=_position(params.get("y"), "(h-text_h)/2", "y"),
    )

    start = _number(params, "start_time", None, minimum=0.0)
    end = _number(params, "end_time", None, minimum=0.0)
    if start is not None and end is not None:
        if end <= start:
            raise ValidationError("endTime must be greater than startTime")
        options["enable"] = f"between(t,{format_number(start)},{format_number(end)})"

    return TransformGraph(
        operation=Operation.TEXT.value,
        prefix="text",
        video_filters=chain([FilterStage("drawtext", options=options), profile.scale_stage()]),
        output_options=profile.video_args() + profile.audio_args(),
    )


def build_merge(params: Mapping[str, Any], profile: OutputProfile) -> TransformGraph:
    inputs: Sequence[MergeInput] = list(params.get("inputs") or [])
    target: MergeTarget = params.get("target") or MergeTarget()
    max_inputs = int(params.get("max_inputs") or 10)
    if len(inputs) < 2:
        raise ValidationError("At least 2 filenames required")
    if len(inputs) > max_inputs:
        raise ValidationError(f"At most {max_inputs} filenames can be merged")

    graph = FilterGraph()
    concat_pads: List[str] = []
    for index, item in enumerate(inputs):
        graph.add(
            stage(
                "scale",
                target.width,
                target.height,
                force_original_aspect_ratio="decrease",
                inputs=(f"{index}:v",),
            ),
            stage("pad", target.width, target.height, "(ow-iw)/2", "(oh-ih)/2"),
            stage("setsar", 1),
            stage("fps", target.fps, outputs=(f"v{index}",)),
        )
        normalize = stage(
            "aformat",
            sample_fmts="fltp",
            sample_rates=target.sample_rate,
            channel_layouts="stereo",
            outputs=(f"a{index}",),
        )
        if item.has_audio:
            normalize.inputs = (f"{index}:a",)
            graph.add(normalize)
        else:
            if not item.duration or item.duration <= 0:
                raise ValidationError(
                    "Cannot merge an input without audio whose duration is unknown",
                    details={"input": index},
                )
            graph.add(
                stage("anullsrc", channel_layout="stereo", sample_rate=target.sample_rate),
                stage("atrim", duration=item.duration),
                normalize,
            )
        concat_pads += [f"v{index}", f"a{index}"]

    graph.add(
        stage(
            "concat",
            n=len(inputs),
            v=1,
            a=1,
            inputs=tuple(concat_pads),
            outputs=("outv", "outa"),
        )
    )

    durations = [item.duration for item in inputs]
    expected = sum(durations) if all(d for d in durations) else None
    return TransformGraph(
        operation=Operation.MERGE.value,
        prefix="merged",
        input_count=len(inputs),
        complex_filter=graph,
        maps=["[outv]", "[outa]"],
        output_options=profile.video_args() + profile.audio_args(),
        expected_duration=expected,
    )


def build_audio(params: Mapping[str, Any], profile: OutputProfile) -> TransformGraph:
    raw = params.get("operation")
    if not raw:
        raise ValidationError("operation required")
    try:
        operation = AudioOperation(raw)
    except ValueError:
        raise ValidationError(
            f"Unknown audio operation: {raw}",
            details={"available": [op.value for op in AudioOperation]},
        ) from None

    if operation is AudioOperation.EXTRACT:
        return TransformGraph(
            operation=Operation.AUDIO.value,
            prefix="audio",
            extension=".mp3",
            output_options=["-vn"] + profile.mp3_args(),
        )

    graph = TransformGraph(
        operation=Operation.AUDIO.value,
        prefix="audio",
        video_filters=chain([profile.scale_stage()]),
        output_options=profile.video_args(),
    )
    if operation is AudioOperation.MUTE:
        graph.output_options.append("-an")
        return graph

    if operation is AudioOperation.VOLUME:
        level = _number(params, "volume", 1.0, minimum=0.0, maximum=MAX_VOLUME)
        graph.audio_filters.append(stage("volume", level))
    elif operation is AudioOperation.FADE_IN:
        graph.audio_filters.append(stage("afade", t="in", st=0, d=FADE_SECONDS))
    else:
        duration = _number(params, "source_duration", None, minimum=0.0) or DEFAULT_SOURCE_DURATION
        fade_start = max(0.0, duration - FADE_SECONDS)
        graph.audio_filters.append(stage("afade", t="out", st=fade_start, d=FADE_SECONDS))
    graph.output_options += profile.audio_args()
    return graph


_BUILDERS: Dict[Operation, Callable[[Mapping[str, Any], OutputProfile], TransformGraph]] = {
    Operation.TRIM: build_trim,
    Operation.FILTER: build_filter,
    Operation.TEXT: build_text,
    Operation.MERGE: build_merge,
    Operation.AUDIO: build_audio,
}


def build_graph(operation: Any, params: Mapping[str, Any], profile: Optional[OutputProfile] = None) -> TransformGraph:
    """Build the ffmpeg graph for ``operation``; raises ``ValidationError`` on bad input."""
    try:
        op = Operation(operation)
    except ValueError:
        raise ValidationError(f"Unknown operation: {operation}") from None
    return _BUILDERS[op](params, profile or OutputProfile())
