"""Streaming transcript assembly for the two device paths.

Each session consumes ``EngineEvent`` values through ``handle`` and
publishes ``UpdateData`` snapshots as the transcript grows.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from .engine import (
    ChunkBoundary,
    ChunkEnd,
    ChunkStart,
    EngineEvent,
    GenerationStep,
    LoadedPipeline,
    PartialText,
    TokenEmitted,
    WindowFinalize,
)
from .ipc_models import UpdateData
from .timeline import Chunk, ChunkTimeline, HistoryRecord, StreamingStats

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[UpdateData], None]


class StreamingSession(ABC):
    """Per-job state machine driven by engine events."""

    def __init__(self, on_update: UpdateCallback):
        self.on_update = on_update

    @abstractmethod
    def handle(self, event: EngineEvent) -> None:
        """Apply one engine event."""

    @abstractmethod
    def result(self, output: Dict[str, Any]) -> Dict[str, Any]:
        """Build the final transcript payload from the engine output."""


class AcceleratedStreamingSession(StreamingSession):
    """Builds a chunk timeline from chunk/token/text events."""

    def __init__(
        self,
        chunk_length_s: float,
        stride_length_s: float,
        on_update: UpdateCallback,
        clock: Callable[[], float] = time.perf_counter,
    ):
        super().__init__(on_update)
        self.chunk_length_s = chunk_length_s
        self.stride_length_s = stride_length_s

        self.timeline = ChunkTimeline()
        self.stats = StreamingStats(clock)
        self.chunk_count = 0
        # Last rate seen in any window; survives window resets
        self.tokens_per_second: Optional[float] = None

    @property
    def window_offset(self) -> float:
        """Absolute start (seconds) of the current sliding window."""
        return (self.chunk_length_s - self.stride_length_s) * self.chunk_count

    def handle(self, event: EngineEvent) -> None:
        if isinstance(event, ChunkStart):
            self.on_chunk_start(event.time)
        elif isinstance(event, TokenEmitted):
            self.on_token(event.token_id, event.time)
        elif isinstance(event, PartialText):
            self.on_partial_text(event.text)
        elif isinstance(event, ChunkEnd):
            self.on_chunk_end(event.time)
        elif isinstance(event, WindowFinalize):
            self.on_window_finalize()
        else:
            logger.debug(f"Ignoring {type(event).__name__} on accelerated path")

    def on_chunk_start(self, local_time: float) -> None:
        offset = self.window_offset
        self.timeline.append(
            Chunk(text="", start=offset + local_time, end=None, offset=offset)
        )

    def on_token(self, token_id: int, at: Optional[float] = None) -> None:
        rate = self.stats.record_token(at)
        if rate is not None:
            self.tokens_per_second = rate

    def on_partial_text(self, text: str) -> None:
        current = self.timeline.tail
        if current is None:
            # Text arrived before any chunk start
            return

        current.text += text
        # The chunk list carries the transcript; text stays empty
        self.on_update(
            UpdateData(
                text="",
                chunks=self.timeline.snapshot(),
                tokens_per_second=self.stats.tokens_per_second,
            )
        )

    def on_chunk_end(self, local_time: float) -> None:
        current = self.timeline.tail
        if current is None:
            logger.warning("Chunk end received with no open chunk")
            return

        current.end = local_time + current.offset
        current.finalised = True

    def on_window_finalize(self) -> None:
        self.stats.reset()
        self.chunk_count += 1

    def result(self, output: Dict[str, Any]) -> Dict[str, Any]:
        return {"tokens_per_second": self.tokens_per_second, **output}


class CpuStreamingSession(StreamingSession):
    """Re-merges the per-window token history after every generation step."""

    def __init__(
        self,
        pipeline: LoadedPipeline,
        time_precision: float,
        on_update: UpdateCallback,
    ):
        super().__init__(on_update)
        self.pipeline = pipeline
        self.time_precision = time_precision

        self.history: List[HistoryRecord] = [HistoryRecord()]

    @property
    def current(self) -> HistoryRecord:
        return self.history[-1]

    def handle(self, event: EngineEvent) -> None:
        if isinstance(event, ChunkBoundary):
            self.on_chunk_boundary(event.info)
        elif isinstance(event, GenerationStep):
            self.on_generation_step(event.output_token_ids)
        else:
            logger.debug(f"Ignoring {type(event).__name__} on CPU path")

    def on_chunk_boundary(self, info: Dict[str, Any]) -> None:
        current = self.current
        current.merge(info)
        current.finalised = True

        if not info.get("is_last", False):
            self.history.append(HistoryRecord())

    def on_generation_step(self, output_token_ids: Sequence[int]) -> None:
        # The engine reports the whole sequence so far, not a delta
        self.current.tokens = list(output_token_ids)

        data = self.pipeline.decode_asr(
            self.history, self.time_precision, return_timestamps=True
        )
        self.on_update(UpdateData(**data))

    def result(self, output: Dict[str, Any]) -> Dict[str, Any]:
        return output
