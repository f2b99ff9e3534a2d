import asyncio
import json
import subprocess

import pytest

from ffedit.catalog import MergeInput, build_graph
from ffedit.engine import EngineAdapter, FFmpegProgressParser, find_failure_marker, parse_probe
from ffedit.errors import EngineError


class CompletedProcess:
    def __init__(self, returncode=0, stdout=b"", stderr=b""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture()
def engine(tmp_path):
    return EngineAdapter("ffmpeg", "ffprobe", tmp_path / "logs")


def test_build_command_orders_inputs_filters_and_output(engine, tmp_path):
    graph = build_graph("trim", {"start_time": 1, "end_time": 4})
    cmd = engine.build_command([tmp_path / "in.mp4"], graph, tmp_path / "out.mp4")
    assert cmd[:4] == ["ffmpeg", "-hide_banner", "-nostdin", "-y"]
    assert cmd[4:8] == ["-ss", "1", "-i", str(tmp_path / "in.mp4")]
    assert cmd[cmd.index("-vf") + 1].startswith("scale=")
    assert cmd[-1] == str(tmp_path / "out.mp4")


def test_build_command_for_merge_maps_outputs(engine, tmp_path):
    graph = build_graph("merge", {"inputs": [MergeInput(), MergeInput()]})
    cmd = engine.build_command([tmp_path / "a.mp4", tmp_path / "b.mp4"], graph, tmp_path / "out.mp4")
    assert cmd.count("-i") == 2
    assert "-filter_complex" in cmd
    assert "-vf" not in cmd
    with pytest.raises(ValueError):
        engine.build_command([tmp_path / "a.mp4"], graph, tmp_path / "out.mp4")


def test_execute_success_saves_log(engine, fake_ffmpeg, tmp_path):
    output = tmp_path / "out.mp4"
    graph = build_graph("filter", {"filter": "negative"})
    result = asyncio.run(engine.execute([tmp_path / "in.mp4"], graph, output, job_id="job1"))

    assert result == output
    assert output.read_bytes() == b"fake output"
    logs = list((tmp_path / "logs" / "ffmpeg").rglob("*.log"))
    assert len(logs) == 1
    assert "job1_filter" in logs[0].name
    assert "time=00:00:01.00" in logs[0].read_text()


def test_execute_nonzero_exit_removes_output(engine, fake_ffmpeg, tmp_path):
    fake_ffmpeg.returncode = 1
    fake_ffmpeg.stderr = b"in.mp4: Invalid data found when processing input\n"
    output = tmp_path / "out.mp4"

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(engine.execute([tmp_path / "in.mp4"], build_graph("filter", {"filter": "blur"}), output))

    assert not output.exists()
    assert excinfo.value.status_code == 500
    assert excinfo.value.details["stderr"] == ["in.mp4: Invalid data found when processing input"]


def test_execute_failure_marker_fails_even_on_zero_exit(engine, fake_ffmpeg, tmp_path):
    fake_ffmpeg.stderr = b"frame=1\r[aost#0:1 @ 0x1] Error while processing the decoded data for stream #0:1\r\nframe=2\n"
    output = tmp_path / "out.mp4"

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(engine.execute([tmp_path / "in.mp4"], build_graph("filter", {"filter": "blur"}), output))

    assert "Error while processing" in excinfo.value.details["reason"]
    assert not output.exists()


def test_execute_tolerates_recoverable_decode_errors(engine, fake_ffmpeg, tmp_path):
    fake_ffmpeg.stderr = (
        b"[h264 @ 0x1] Error while decoding stream #0:0: Invalid data found when processing input\n"
        b"[vist#0:0/h264 @ 0x2] [dec:h264 @ 0x3] Decoding error: Invalid data found when processing input\n"
        b"frame=  48 fps=0.0 time=00:00:02.00 speed=4x\r"
    )
    output = tmp_path / "out.mp4"

    result = asyncio.run(engine.execute([tmp_path / "in.mp4"], build_graph("filter", {"filter": "blur"}), output))

    assert result == output
    assert output.exists()


def test_execute_error_details_hide_server_paths(engine, fake_ffmpeg, tmp_path):
    source = tmp_path / "uploads" / "in.mp4"
    output = tmp_path / "processed" / "out.mp4"
    fake_ffmpeg.returncode = 1
    fake_ffmpeg.stderr = f"{source}: No such file or directory\n[out#0 @ 0x1] Error opening output {output}\n".encode()

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(engine.execute([source], build_graph("filter", {"filter": "blur"}), output))

    details = excinfo.value.details
    assert details["stderr"] == ["in.mp4: No such file or directory", "[out#0 @ 0x1] Error opening output out.mp4"]
    assert str(tmp_path) not in json.dumps(details)


def test_execute_empty_output_is_failure(engine, fake_ffmpeg, tmp_path):
    fake_ffmpeg.output = b""
    with pytest.raises(EngineError) as excinfo:
        asyncio.run(engine.execute([tmp_path / "in.mp4"], build_graph("filter", {"filter": "blur"}), tmp_path / "o.mp4"))
    assert excinfo.value.details["reason"] == "ffmpeg produced no output"


def test_execute_launch_failure(engine, fake_ffmpeg, tmp_path):
    fake_ffmpeg.launch_error = FileNotFoundError("ffmpeg")
    with pytest.raises(EngineError) as excinfo:
        asyncio.run(engine.execute([tmp_path / "in.mp4"], build_graph("filter", {"filter": "blur"}), tmp_path / "o.mp4"))
    assert excinfo.value.message == "Failed to start ffmpeg"


def test_pump_stream_splits_carriage_returns():
    class Stream:
        def __init__(self, chunks):
            self.chunks = list(chunks)

        async def read(self, n):
            return self.chunks.pop(0) if self.chunks else b""

    lines = []
    stream = Stream([b"frame=1 time=00:00:0", b"1.00\rframe=2\r\nlast line"])
    asyncio.run(EngineAdapter._pump_stream(stream, lines.append))
    assert lines == ["frame=1 time=00:00:01.00", "frame=2", "last line"]


def test_progress_parser_tracks_percent():
    parser = FFmpegProgressParser(total_seconds=10.0, job_id="j")
    parser("frame=  50 fps=25 time=00:00:05.00 bitrate= 100kbits/s speed=1.5x")
    assert parser.elapsed == 5.0
    assert parser.percent == 50.0
    parser("no timing information here")
    assert parser.elapsed == 5.0


def test_find_failure_marker():
    assert find_failure_marker(["ok", "Conversion failed!"]) == "Conversion failed!"
    assert find_failure_marker(["frame=1", "video:1kB audio:0kB"]) is None
    assert find_failure_marker(["Error while decoding stream #0:0: Invalid data found when processing input"]) is None
    assert find_failure_marker(["Error while filtering: Cannot allocate memory"]) == "Error while filtering: Cannot allocate memory"


def test_probe_parses_ffprobe_json(engine, monkeypatch, tmp_path):
    payload = {
        "format": {"duration": "8.04"},
        "streams": [{"codec_type": "audio"}, {"codec_type": "video", "width": 1280, "height": 720}],
    }
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return CompletedProcess(stdout=json.dumps(payload).encode("utf-8"))

    monkeypatch.setattr(subprocess, "run", fake_run)
    info = asyncio.run(engine.probe(tmp_path / "in.mp4"))

    assert calls[0][0] == "ffprobe"
    assert "-show_streams" in calls[0]
    assert (info.duration, info.width, info.height) == (8.04, 1280, 720)
    assert info.has_video and info.has_audio


def test_probe_failure_raises(engine, monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", lambda cmd, **kwargs: CompletedProcess(returncode=1, stderr=b"No such file"))
    with pytest.raises(EngineError):
        asyncio.run(engine.probe(tmp_path / "missing.mp4"))


def test_parse_probe_without_streams():
    info = parse_probe({"format": {}})
    assert info.duration == 0.0
    assert not info.has_video and not info.has_audio
