"""Transcript fragment bookkeeping shared by the streaming sessions."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Chunk:
    """One transcript fragment with its absolute timestamps (seconds)."""

    text: str = ""
    start: float = 0.0
    end: Optional[float] = None
    offset: float = 0.0
    finalised: bool = False

    @property
    def timestamp(self) -> Tuple[float, Optional[float]]:
        return self.start, self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "timestamp": [self.start, self.end],
            "finalised": self.finalised,
            "offset": self.offset,
        }


class ChunkTimeline:
    """Ordered chunk list; only the tail chunk is ever mutated."""

    def __init__(self):
        self._chunks: List[Chunk] = []

    def __len__(self) -> int:
        return len(self._chunks)

    def __iter__(self) -> Iterator[Chunk]:
        return iter(self._chunks)

    def __getitem__(self, index: int) -> Chunk:
        return self._chunks[index]

    @property
    def tail(self) -> Optional[Chunk]:
        """The chunk currently receiving text, or None if empty."""
        return self._chunks[-1] if self._chunks else None

    def append(self, chunk: Chunk) -> Chunk:
        """Append a new tail chunk."""
        previous = self.tail
        if previous is not None:
            if not previous.finalised:
                logger.warning(
                    f"Starting chunk at {chunk.start:.2f}s before the previous "
                    f"chunk (started {previous.start:.2f}s) was finalised"
                )
            if chunk.start < previous.start:
                logger.warning(
                    f"Chunk start {chunk.start:.2f}s precedes previous start "
                    f"{previous.start:.2f}s"
                )
        self._chunks.append(chunk)
        return chunk

    def snapshot(self) -> List[Dict[str, Any]]:
        """Detached copy of the timeline suitable for serialization."""
        return [chunk.to_dict() for chunk in self._chunks]


class StreamingStats:
    """Token throughput within the current sliding window."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self.start_time: Optional[float] = None
        self.num_tokens: int = 0
        self.tokens_per_second: Optional[float] = None

    def record_token(self, at: Optional[float] = None) -> Optional[float]:
        """Count one emitted token and return the updated rate, if known.

        ``at`` is when the token was decoded; the clock is read when it is
        not given. The rate needs two tokens in the window before it is
        defined.
        """
        now = self._clock() if at is None else at
        if self.start_time is None:
            self.start_time = now

        previous = self.num_tokens
        self.num_tokens += 1
        if previous > 0:
            elapsed_ms = (now - self.start_time) * 1000
            if elapsed_ms > 0:
                self.tokens_per_second = self.num_tokens / elapsed_ms * 1000
        return self.tokens_per_second

    def reset(self) -> None:
        self.start_time = None
        self.num_tokens = 0
        self.tokens_per_second = None


@dataclass
class HistoryRecord:
    """Token history for one window on the CPU path.

    ``extra`` holds whatever boundary information the engine reported for
    the window (stride, offset, is_last, ...).
    """

    tokens: List[int] = field(default_factory=list)
    finalised: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def merge(self, info: Dict[str, Any]) -> None:
        """Overlay boundary info onto this record."""
        info = dict(info)
        if "tokens" in info:
            self.tokens = list(info.pop("tokens"))
        info.pop("finalised", None)
        self.extra.update(info)

    def get(self, key: str, default: Any = None) -> Any:
        return self.extra.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.extra, "tokens": list(self.tokens), "finalised": self.finalised}
