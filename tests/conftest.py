"""Shared test doubles for the inference engine."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from scribed.engine import InferenceEngine, LoadedPipeline
from scribed.timeline import HistoryRecord


class FakePipeline(LoadedPipeline):
    """Replays a fixed list of engine events."""

    def __init__(self, model_name: str, time_precision: float = 0.02):
        self.model_name = model_name
        self._time_precision = time_precision
        self.events: List[Any] = []
        self.output: Dict[str, Any] = {"text": "hello world", "chunks": []}
        self.error: Optional[BaseException] = None
        self.disposed = False
        self.generate_calls: List[Any] = []
        self.decode_calls: List[Any] = []

    @property
    def time_precision(self) -> float:
        return self._time_precision

    async def generate(self, audio, options, on_event):
        self.generate_calls.append(options)
        for event in self.events:
            on_event(event)
        if self.error is not None:
            raise self.error
        return dict(self.output)

    def decode_asr(
        self,
        history: Sequence[HistoryRecord],
        time_precision: float,
        return_timestamps: bool = True,
    ) -> Dict[str, Any]:
        self.decode_calls.append(([r.to_dict() for r in history], time_precision))
        tokens = [t for record in history for t in record.tokens]
        return {
            "text": " ".join(str(t) for t in tokens),
            "chunks": [{"text": str(t), "timestamp": [0.0, None]} for t in tokens],
        }

    async def dispose(self) -> None:
        self.disposed = True


class FakeEngine(InferenceEngine):
    """Records loads and tracks how many instances are resident."""

    def __init__(self):
        self.loads: List[Any] = []
        self.instances: List[FakePipeline] = []
        self.resident_at_load: List[int] = []
        self.fail_with: Optional[BaseException] = None
        self.gate: Optional[asyncio.Event] = None
        self.configure = None

    @property
    def resident(self) -> int:
        return sum(1 for p in self.instances if not p.disposed)

    async def load(self, model_name, options, progress_callback=None):
        self.loads.append((model_name, options))
        self.resident_at_load.append(self.resident)
        if progress_callback is not None:
            progress_callback(
                {"status": "progress", "stage": "initiate", "name": model_name}
            )
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

        pipeline = FakePipeline(model_name)
        if self.configure is not None:
            self.configure(pipeline)
        self.instances.append(pipeline)
        return pipeline


@pytest.fixture
def fake_engine():
    """Create a fake inference engine."""
    return FakeEngine()


@pytest.fixture
def fake_pipeline():
    """Create a standalone fake pipeline."""
    return FakePipeline("test-model")
