import pytest

from ffedit.catalog import (
    FILTER_PRESETS,
    MergeInput,
    MergeTarget,
    OutputProfile,
    build_graph,
    normalize_color,
)
from ffedit.errors import ValidationError


PROFILE = OutputProfile()


def test_unknown_operation_is_validation_error():
    with pytest.raises(ValidationError):
        build_graph("reverse", {})


def test_trim_seeks_input_and_clamps_duration():
    graph = build_graph("trim", {"start_time": 2, "end_time": 7.5}, PROFILE)
    assert graph.prefix == "trimmed"
    assert graph.options_for_input(0) == ["-ss", "2"]
    assert graph.output_options[-2:] == ["-t", "5.5"]
    assert graph.expected_duration == 5.5


def test_trim_with_end_before_start_has_no_duration_clamp():
    graph = build_graph("trim", {"start_time": 5, "end_time": 3}, PROFILE)
    assert "-t" not in graph.output_options


def test_trim_rejects_negative_start():
    with pytest.raises(ValidationError):
        build_graph("trim", {"start_time": -1}, PROFILE)


def test_output_profile_is_bounded():
    args = PROFILE.video_args() + PROFILE.audio_args()
    for flag, value in [
        ("-c:v", "libx264"),
        ("-preset", "ultrafast"),
        ("-crf", "35"),
        ("-threads", "1"),
        ("-maxrate", "500k"),
        ("-bufsize", "250k"),
        ("-ac", "1"),
        ("-ar", "22050"),
    ]:
        assert args[args.index(flag) + 1] == value
    assert PROFILE.scale_stage().render() == "scale=w=trunc(min(480\\,iw)/2)*2:h=-2"


@pytest.mark.parametrize("name", sorted(FILTER_PRESETS))
def test_every_named_filter_renders(name):
    graph = build_graph("filter", {"filter": name}, PROFILE)
    rendered = graph.video_filters.render()
    assert rendered.startswith(FILTER_PRESETS[name].name)
    assert rendered.endswith(PROFILE.scale_stage().render())


def test_unknown_filter_lists_available_names():
    with pytest.raises(ValidationError) as excinfo:
        build_graph("filter", {"filter": "posterize"}, PROFILE)
    assert excinfo.value.status_code == 400
    assert "sepia" in excinfo.value.details["available"]


def test_text_overlay_options():
    graph = build_graph(
        "text",
        {"text": "Hello", "font_size": 48, "font_color": "#00ff00", "x": 10, "y": "h-th-20", "font_file": "/fonts/a.ttf"},
        PROFILE,
    )
    drawtext = graph.video_filters.stages[0]
    assert drawtext.name == "drawtext"
    assert drawtext.options["fontfile"] == "/fonts/a.ttf"
    assert drawtext.options["fontsize"] == 48
    assert drawtext.options["fontcolor"] == "0x00ff00"
    assert drawtext.options["expansion"] == "none"
    assert drawtext.options["x"] == 10
    assert "enable" not in drawtext.options


def test_text_defaults_center_the_overlay():
    drawtext = build_graph("text", {"text": "Hi"}, PROFILE).video_filters.stages[0]
    assert drawtext.options["x"] == "(w-text_w)/2"
    assert drawtext.options["y"] == "(h-text_h)/2"
    assert drawtext.options["fontsize"] == 32
    assert drawtext.options["fontcolor"] == "white"
    assert "fontfile" not in drawtext.options


@pytest.mark.parametrize(
    "params",
    [
        {"text": ""},
        {"text": "   "},
        {"text": "x" * 501},
        {"text": "ok", "font_size": 0},
        {"text": "ok", "font_color": "red;drop"},
        {"text": "ok", "x": "w'[0]"},
        {"text": "ok", "start_time": 3, "end_time": 3},
    ],
)
def test_text_rejects_bad_parameters(params):
    with pytest.raises(ValidationError):
        build_graph("text", params, PROFILE)


def test_normalize_color_forms():
    assert normalize_color("#AABBCC") == "0xAABBCC"
    assert normalize_color("#aabbcc80") == "0xaabbcc80"
    assert normalize_color("yellow@0.5") == "yellow@0.5"
    assert normalize_color(None) == "white"


def test_merge_graph_targets_uniform_format():
    target = MergeTarget(width=640, height=360, fps=30, sample_rate=48000)
    graph = build_graph(
        "merge",
        {"inputs": [MergeInput(duration=4.0), MergeInput(duration=6.0), MergeInput(duration=1.0)], "target": target},
        PROFILE,
    )
    rendered = graph.complex_filter.render()
    for index in range(3):
        assert f"[{index}:v]scale=640:360:force_original_aspect_ratio=decrease,pad=640:360:(ow-iw)/2:(oh-ih)/2,setsar=1,fps=30[v{index}]" in rendered
        assert f"[{index}:a]aformat=sample_fmts=fltp:sample_rates=48000:channel_layouts=stereo[a{index}]" in rendered
    assert rendered.endswith("[v0][a0][v1][a1][v2][a2]concat=n=3:v=1:a=1[outv][outa]")
    assert graph.input_count == 3
    assert graph.maps == ["[outv]", "[outa]"]
    assert graph.expected_duration == 11.0


def test_merge_fills_silent_audio_for_inputs_without_audio():
    graph = build_graph(
        "merge",
        {"inputs": [MergeInput(), MergeInput(has_audio=False, duration=2.5)]},
        PROFILE,
    )
    rendered = graph.complex_filter.render()
    assert "anullsrc=channel_layout=stereo:sample_rate=44100,atrim=duration=2.5,aformat=" in rendered
    assert "[1:a]" not in rendered
    assert graph.expected_duration is None


def test_merge_input_without_audio_needs_duration():
    with pytest.raises(ValidationError):
        build_graph("merge", {"inputs": [MergeInput(), MergeInput(has_audio=False)]}, PROFILE)


def test_merge_input_count_limits():
    with pytest.raises(ValidationError):
        build_graph("merge", {"inputs": [MergeInput()]}, PROFILE)
    with pytest.raises(ValidationError):
        build_graph("merge", {"inputs": [MergeInput()] * 4, "max_inputs": 3}, PROFILE)


def test_audio_mute_drops_audio_stream():
    graph = build_graph("audio", {"operation": "mute"}, PROFILE)
    assert "-an" in graph.output_options
    assert "-c:a" not in graph.output_options
    assert not graph.audio_filters


def test_audio_volume_and_bounds():
    graph = build_graph("audio", {"operation": "volume", "volume": 1.5}, PROFILE)
    assert graph.audio_filters.render() == "volume=1.5"
    with pytest.raises(ValidationError):
        build_graph("audio", {"operation": "volume", "volume": 11}, PROFILE)


def test_audio_fade_in():
    graph = build_graph("audio", {"operation": "fadeIn"}, PROFILE)
    assert graph.audio_filters.render() == "afade=t=in:st=0:d=3"


@pytest.mark.parametrize(
    "duration, expected_start",
    [(20.0, "17"), (2.0, "0"), (None, "27")],
)
def test_audio_fade_out_starts_three_seconds_before_end(duration, expected_start):
    graph = build_graph("audio", {"operation": "fadeOut", "source_duration": duration}, PROFILE)
    assert graph.audio_filters.render() == f"afade=t=out:st={expected_start}:d=3"


def test_audio_extract_is_mp3_without_video():
    graph = build_graph("audio", {"operation": "extract"}, PROFILE)
    assert graph.extension == ".mp3"
    assert graph.output_options[0] == "-vn"
    assert "libmp3lame" in graph.output_options
    assert not graph.video_filters


def test_audio_requires_known_operation():
    with pytest.raises(ValidationError):
        build_graph("audio", {}, PROFILE)
    with pytest.raises(ValidationError):
        build_graph("audio", {"operation": "echo"}, PROFILE)
