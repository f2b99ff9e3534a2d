"""Edit flow: validate, build the graph, queue the ffmpeg run, register the output."""
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .catalog import (
    AudioOperation,
    MergeInput,
    MergeTarget,
    Operation,
    OutputProfile,
    TransformGraph,
    build_graph,
)
from .engine import EngineAdapter, MediaInfo
from .errors import EngineError, ValidationError
from .jobs import JobQueue
from .store import Artifact, ArtifactKind, ArtifactStore

logger = logging.getLogger("ffedit.editor")

FONT_CANDIDATES = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "/Library/Fonts/Arial.ttf",
    "C:/Windows/Fonts/arial.ttf",
)


def find_font(configured: Optional[str] = None, candidates: Iterable[str] = FONT_CANDIDATES) -> Optional[str]:
    if configured:
        if Path(configured).is_file():
            return configured
        logger.warning("Configured font file not found: %s", configured)
    for candidate in candidates:
        if Path(candidate).is_file():
            return candidate
    return None


class MediaEditor:
    def __init__(
        self,
        store: ArtifactStore,
        engine: EngineAdapter,
        queue: JobQueue,
        *,
        profile: Optional[OutputProfile] = None,
        merge_target: Optional[MergeTarget] = None,
        max_merge_inputs: int = 10,
        font_file: Optional[str] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.queue = queue
        self.profile = profile or OutputProfile()
        self.merge_target = merge_target or MergeTarget()
        self.max_merge_inputs = max_merge_inputs
        self.font_file = font_file

    async def upload_info(self, artifact: Artifact) -> MediaInfo:
        """Probe a fresh upload; a probe failure still leaves the upload in place."""
        try:
            return await self.engine.probe(artifact.path)
        except EngineError as exc:
            logger.warning("FFprobe warning (file still uploaded) %s: %s", artifact.identifier, exc)
            return MediaInfo()

    async def trim(self, filename: str, start_time: Any = None, end_time: Any = None) -> Artifact:
        source = self.store.resolve_input(filename)
        graph = build_graph(Operation.TRIM, {"start_time": start_time, "end_time": end_time}, self.profile)
        logger.info("Trimming %s from %ss to %ss", filename, start_time or 0, end_time)
        return await self._run_transform([source], graph)

    async def apply_filter(self, filename: str, filter_name: Optional[str]) -> Artifact:
        source = self.store.resolve_input(filename)
        graph = build_graph(Operation.FILTER, {"filter": filter_name}, self.profile)
        logger.info("Applying filter %s to %s", filter_name, filename)
        return await self._run_transform([source], graph)

    async def add_text(self, filename: str, text: Optional[str], **style: Any) -> Artifact:
        source = self.store.resolve_input(filename)
        params: Dict[str, Any] = dict(style)
        params["text"] = text
        params["font_file"] = find_font(self.font_file)
        graph = build_graph(Operation.TEXT, params, self.profile)
        logger.info("Adding text overlay to %s", filename)
        return await self._run_transform([source], graph)

    async def merge(self, filenames: Sequence[str]) -> Artifact:
        if not filenames or len(filenames) < 2:
            raise ValidationError("At least 2 filenames required")
        if len(filenames) > self.max_merge_inputs:
            raise ValidationError(f"At most {self.max_merge_inputs} filenames can be merged")
        sources = [self.store.resolve_input(name) for name in filenames]
        inputs: List[MergeInput] = []
        for source in sources:
            inputs.append(await self._merge_input(source))
        graph = build_graph(
            Operation.MERGE,
            {"inputs": inputs, "target": self.merge_target, "max_inputs": self.max_merge_inputs},
            self.profile,
        )
        logger.info("Merging %d files", len(sources))
        return await self._run_transform(sources, graph)

    async def _merge_input(self, source: Path) -> MergeInput:
        try:
            info = await self.engine.probe(source)
        except EngineError as exc:
            logger.warning("Probe failed for merge input %s, assuming it has audio: %s", source.name, exc)
            return MergeInput()
        return MergeInput(has_audio=info.has_audio, duration=info.duration or None)

    async def audio(self, filename: str, operation: Optional[str], volume: Any = None) -> Artifact:
        source = self.store.resolve_input(filename)
        params: Dict[str, Any] = {"operation": operation, "volume": volume}
        if operation == AudioOperation.FADE_OUT.value:
            params["source_duration"] = await self._source_duration(source)
        graph = build_graph(Operation.AUDIO, params, self.profile)
        logger.info("Audio operation %s on %s", operation, filename)
        return await self._run_transform([source], graph)

    async def _source_duration(self, source: Path) -> Optional[float]:
        try:
            info = await self.engine.probe(source)
        except EngineError as exc:
            logger.warning("Could not read duration of %s: %s", source.name, exc)
            return None
        return info.duration or None

    async def _run_transform(self, inputs: List[Path], graph: TransformGraph) -> Artifact:
        output = self.store.allocate(graph.prefix, graph.extension)

        async def work() -> Path:
            return await self.engine.execute(inputs, graph, output, job_id=output.stem)

        await self.queue.run(work, label=f"{graph.operation}:{output.name}")
        logger.info("%s complete: %s", graph.operation, output.name)
        return self.store.describe(output.name, ArtifactKind.PROCESSED)
