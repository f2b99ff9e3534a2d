import asyncio
import json
import logging
import os
import re
import signal
import subprocess
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

import structlog

from .catalog import TransformGraph
from .errors import EngineError

logger = logging.getLogger("ffedit.engine")
struct_logger = structlog.get_logger("ffedit")

STDERR_TAIL_LINES = 40

# ffmpeg sometimes exits 0 after writing a truncated file; these lines mean
# the output can't be trusted.
FAILURE_MARKERS = (
    "Conversion failed",
    "Invalid data found",
    "Error opening",
    "Error while opening",
    "Error while filtering",
    "Error while processing",
    "Error initializing",
    "Error reinitializing",
    "Error applying option",
    "Error parsing",
    "No such file or directory",
    "Invalid argument",
    "Could not open",
    "could not find codec",
)

# Per-packet decode errors; ffmpeg skips the packet and keeps going.
RECOVERABLE_MARKERS = (
    "Error while decoding",
    "Decoding error",
)


@dataclass
class MediaInfo:
    duration: float = 0.0
    width: int = 0
    height: int = 0
    has_video: bool = False
    has_audio: bool = False


def find_failure_marker(lines: Sequence[str]) -> Optional[str]:
    for line in lines:
        if any(marker in line for marker in RECOVERABLE_MARKERS):
            continue
        for marker in FAILURE_MARKERS:
            if marker in line:
                return line.strip()
    return None


def strip_paths(text: str, paths: Sequence[Path]) -> str:
    """Replace server-side paths in ffmpeg output with bare file names."""
    for path in sorted((Path(p) for p in paths), key=lambda p: len(str(p)), reverse=True):
        text = text.replace(str(path), path.name)
    return text


class FFmpegProgressParser:
    _TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
    _SPEED_PATTERN = re.compile(r"speed=\s*(\d+\.?\d*)x")
    _FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")

    def __init__(self, total_seconds: Optional[float], job_id: Optional[str] = None, step: float = 10.0) -> None:
        self._total = total_seconds if total_seconds and total_seconds > 0 else None
        self._job_id = job_id
        self._step = step
        self._last_reported = -step
        self.elapsed = 0.0
        self.percent: Optional[float] = None

    def __call__(self, line: str) -> None:
        match = self._TIME_PATTERN.search(line)
        if not match:
            return
        hours, minutes, seconds = match.groups()
        self.elapsed = int(hours) * 3600 + int(minutes) * 60 + float(seconds)

        if self._total is not None:
            self.percent = min(99.0, (self.elapsed / self._total) * 100.0)
            marker = self.percent
        else:
            marker = self.elapsed
        if marker < self._last_reported + self._step:
            return
        self._last_reported = marker

        stats: Dict[str, Any] = {"time": round(self.elapsed, 1)}
        speed = self._SPEED_PATTERN.search(line)
        if speed:
            stats["speed"] = speed.group(1)
        frame = self._FRAME_PATTERN.search(line)
        if frame:
            stats["frame"] = frame.group(1)
        if self.percent is not None:
            stats["percent"] = round(self.percent)
        struct_logger.info("engine_progress", job_id=self._job_id, **stats)


def _child_setup() -> None:
    signal.signal(signal.SIGTERM, signal.SIG_DFL)


class EngineAdapter:
    """Runs one ffmpeg process per call and turns its outcome into a result.

    The adapter never limits concurrency; callers go through the job queue.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe", logs_dir: Optional[Path] = None) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.logs_dir = Path(logs_dir) if logs_dir is not None else None

    def build_command(self, inputs: Sequence[Path], graph: TransformGraph, output: Path) -> List[str]:
        if len(inputs) != graph.input_count:
            raise ValueError(f"{graph.operation} expects {graph.input_count} inputs, got {len(inputs)}")
        cmd = [self.ffmpeg_bin, "-hide_banner", "-nostdin", "-y"]
        for index, path in enumerate(inputs):
            cmd += graph.options_for_input(index) + ["-i", str(path)]
        if graph.complex_filter:
            cmd += ["-filter_complex", graph.complex_filter.render()]
            for target in graph.maps:
                cmd += ["-map", target]
        if graph.video_filters:
            cmd += ["-vf", graph.video_filters.render()]
        if graph.audio_filters:
            cmd += ["-af", graph.audio_filters.render()]
        cmd += list(graph.output_options)
        cmd.append(str(output))
        return cmd

    async def execute(
        self,
        inputs: Sequence[Path],
        graph: TransformGraph,
        output: Path,
        *,
        job_id: Optional[str] = None,
    ) -> Path:
        """Run the transform; returns ``output`` or raises ``EngineError``.

        Any partially written output is removed before the error propagates.
        """
        output = Path(output)
        cmd = self.build_command(inputs, graph, output)
        logger.info("FFmpeg command: %s", " ".join(cmd))
        parser = FFmpegProgressParser(graph.expected_duration, job_id)
        tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        log_lines: List[str] = []
        markers: List[str] = []

        def on_line(line: str) -> None:
            tail.append(line)
            log_lines.append(line)
            if not markers:
                found = find_failure_marker([line])
                if found is not None:
                    markers.append(found)
            try:
                parser(line)
            except Exception as exc:
                logger.debug("Progress parser failed on line: %s - %s", line[:100], exc)

        try:
            return_code = await self._run(cmd, on_line)
        except BaseException:
            self._discard(output)
            raise
        finally:
            self._save_log(log_lines, graph.operation, job_id)

        problem: Optional[str] = None
        if return_code != 0:
            problem = f"ffmpeg exited with code {return_code}"
        elif markers:
            problem = f"ffmpeg reported an error: {markers[0]}"
        elif not output.exists() or output.stat().st_size == 0:
            problem = "ffmpeg produced no output"

        if problem is not None:
            logger.error("%s failed: %s", graph.operation, problem)
            self._discard(output)
            paths = list(inputs) + [output]
            raise EngineError(
                f"Failed to process {graph.operation}",
                details={
                    "reason": strip_paths(problem, paths),
                    "stderr": [strip_paths(line, paths) for line in list(tail)[-10:]],
                },
            )
        return output

    async def _run(self, cmd: List[str], on_line: Callable[[str], None]) -> int:
        kwargs: Dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if os.name != "nt":
            kwargs["preexec_fn"] = _child_setup
        try:
            proc = await asyncio.create_subprocess_exec(*cmd, **kwargs)
        except Exception as exc:
            logger.error("Failed to launch ffmpeg command %s: %s", cmd[:4], exc)
            raise EngineError("Failed to start ffmpeg", details={"reason": str(exc)}) from exc

        pumps = [
            asyncio.create_task(self._pump_stream(proc.stdout, None)),
            asyncio.create_task(self._pump_stream(proc.stderr, on_line)),
        ]
        try:
            return_code = await proc.wait()
            await asyncio.gather(*pumps)
        except BaseException:
            for task in pumps:
                task.cancel()
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise
        return return_code

    @staticmethod
    async def _pump_stream(stream: Any, on_line: Optional[Callable[[str], None]]) -> None:
        if stream is None:
            return
        buffer = ""
        while True:
            # Small reads so \r-terminated stats lines arrive promptly.
            chunk = await stream.read(1024)
            if not chunk:
                break
            if on_line is None:
                continue
            buffer += chunk.decode("utf-8", errors="ignore")
            parts = re.split(r"[\r\n]", buffer)
            buffer = parts[-1]
            for part in parts[:-1]:
                if part:
                    on_line(part)
        if buffer and on_line is not None:
            on_line(buffer)

    def _discard(self, output: Path) -> None:
        try:
            output.unlink()
            logger.info("Removed partial output %s", output.name)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove partial output %s: %s", output, exc)

    def _save_log(self, lines: List[str], operation: str, job_id: Optional[str]) -> Optional[Path]:
        if self.logs_dir is None or not lines:
            return None
        now = datetime.now(timezone.utc)
        folder = self.logs_dir / "ffmpeg" / now.strftime("%Y%m%d")
        name = now.strftime("%Y%m%d_%H%M%S_") + f"{job_id or 'adhoc'}_{operation}.log"
        try:
            folder.mkdir(parents=True, exist_ok=True)
            (folder / name).write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save ffmpeg log %s: %s", name, exc)
            return None
        return folder / name

    # ---------- probing ----------

    def probe_command(self, path: Path) -> List[str]:
        return [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

    async def probe(self, path: Path) -> MediaInfo:
        cmd = self.probe_command(path)
        try:
            proc = await asyncio.to_thread(
                subprocess.run,
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=60,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise EngineError("ffprobe failed", details={"reason": str(exc)}) from exc
        if proc.returncode != 0:
            raise EngineError(
                "ffprobe failed",
                details={"stderr": proc.stderr.decode("utf-8", "ignore")[-500:]},
            )
        try:
            payload = json.loads(proc.stdout.decode("utf-8", "ignore"))
        except ValueError as exc:
            raise EngineError("ffprobe output could not be parsed", details={"reason": str(exc)}) from exc
        return parse_probe(payload)


def parse_probe(payload: Dict[str, Any]) -> MediaInfo:
    streams = payload.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    def as_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    duration = as_float((payload.get("format") or {}).get("duration"))
    if not duration and video is not None:
        duration = as_float(video.get("duration"))
    return MediaInfo(
        duration=duration,
        width=int(as_float((video or {}).get("width"))),
        height=int(as_float((video or {}).get("height"))),
        has_video=video is not None,
        has_audio=audio is not None,
    )
