"""Inference engine interface and the faster-whisper implementation.

The worker core only talks to ``InferenceEngine`` / ``LoadedPipeline``.
Generation progress is reported as a stream of ``EngineEvent`` values,
delivered in engine order on the event loop thread.
"""

import asyncio
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from faster_whisper import WhisperModel
from faster_whisper.tokenizer import Tokenizer
from faster_whisper.utils import available_models, download_model
from huggingface_hub.errors import LocalEntryNotFoundError, RevisionNotFoundError

from .config import EngineConfig
from .device_policy import (
    DECODER_SUBMODEL,
    DEFAULT_REVISION,
    ENCODER_SUBMODEL,
    ENGLISH_ONLY_SUFFIX,
    FULL_PRECISION,
    HALF_PRECISION,
    QUANTIZED_4BIT,
    ConfigurationError,
    EngineOptions,
)
from .ipc_models import Device
from .timeline import HistoryRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]

# CTranslate2 has no 4-bit kernels; int8 weights are the closest it offers.
PRECISION_COMPUTE_TYPES = {
    (HALF_PRECISION, QUANTIZED_4BIT): "int8_float16",
    (FULL_PRECISION, QUANTIZED_4BIT): "int8_float32",
    (HALF_PRECISION, HALF_PRECISION): "float16",
    (FULL_PRECISION, FULL_PRECISION): "float32",
}
CPU_QUANTIZED_COMPUTE_TYPE = "int8"
CPU_FULL_COMPUTE_TYPE = "float32"

# Marks the end of the event stream from the generation thread
_END_OF_STREAM = object()


# --- Engine events ---------------------------------------------------------


@dataclass(frozen=True)
class ChunkStart:
    """A new transcript chunk begins at ``time`` seconds into the window."""

    time: float


@dataclass(frozen=True)
class TokenEmitted:
    """One token was decoded.

    ``time`` is the ``time.perf_counter`` reading at which the generation
    thread decoded the token, when known.
    """

    token_id: int
    time: Optional[float] = field(default=None, compare=False)


@dataclass(frozen=True)
class PartialText:
    """Newly decoded text for the current chunk."""

    text: str


@dataclass(frozen=True)
class ChunkEnd:
    """The current chunk ends at ``time`` seconds into the window."""

    time: float


@dataclass(frozen=True)
class WindowFinalize:
    """The current sliding window is done."""


@dataclass(frozen=True)
class GenerationStep:
    """Cumulative token ids decoded so far in the current window."""

    output_token_ids: Tuple[int, ...]


@dataclass(frozen=True)
class ChunkBoundary:
    """The current window was fully decoded.

    ``info`` carries the window's tokens and geometry; ``is_last`` is set
    on the final window of the job.
    """

    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_last(self) -> bool:
        return bool(self.info.get("is_last", False))


EngineEvent = Union[
    ChunkStart,
    TokenEmitted,
    PartialText,
    ChunkEnd,
    WindowFinalize,
    GenerationStep,
    ChunkBoundary,
]
EventCallback = Callable[[EngineEvent], None]


@dataclass
class GenerationOptions:
    """Per-job generation parameters."""

    chunk_length_s: float
    stride_length_s: float
    time_precision: float
    task: str = "transcribe"
    language: Optional[str] = None
    # Greedy decoding
    do_sample: bool = False
    return_timestamps: bool = True
    # True: ChunkStart/TokenEmitted/PartialText/ChunkEnd/WindowFinalize
    # False: GenerationStep/ChunkBoundary
    streaming: bool = False

    def __post_init__(self):
        if self.chunk_length_s <= 0:
            raise ValueError("chunk_length_s must be positive")
        if not 0 <= self.stride_length_s < self.chunk_length_s:
            raise ValueError("stride_length_s must be in [0, chunk_length_s)")


# --- Interfaces ------------------------------------------------------------


class LoadedPipeline(ABC):
    """A loaded model instance (tokenizer, acoustic model, feature extractor)."""

    @property
    @abstractmethod
    def time_precision(self) -> float:
        """Seconds represented by one timestamp token step."""

    @abstractmethod
    async def generate(
        self, audio: np.ndarray, options: GenerationOptions, on_event: EventCallback
    ) -> Dict[str, Any]:
        """Transcribe ``audio``, reporting progress through ``on_event``."""

    @abstractmethod
    def decode_asr(
        self,
        history: Sequence[HistoryRecord],
        time_precision: float,
        return_timestamps: bool = True,
    ) -> Dict[str, Any]:
        """Merge per-window token histories into ``{text, chunks}``."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release device resources held by the model."""


class InferenceEngine(ABC):
    """Factory for loaded pipelines."""

    @abstractmethod
    async def load(
        self,
        model_name: str,
        options: EngineOptions,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LoadedPipeline:
        """Load ``model_name`` with the given options."""


# --- Token history merging -------------------------------------------------


def _overlap_length(previous: Sequence[int], current: Sequence[int]) -> int:
    """Length of the longest suffix of ``previous`` that prefixes ``current``."""
    for length in range(min(len(previous), len(current)), 0, -1):
        if list(previous[-length:]) == list(current[:length]):
            return length
    return 0


def merge_token_history(
    history: Sequence[HistoryRecord],
    decode: Callable[[List[int]], str],
    timestamp_begin: int,
    eot: int,
    time_precision: float,
    return_timestamps: bool = True,
) -> Dict[str, Any]:
    """Merge per-window token sequences into one timestamped transcript.

    Token ids below ``eot`` are text; ids at or above ``timestamp_begin``
    are timestamps in units of ``time_precision`` relative to the window
    start. Consecutive windows overlap, so text a window repeats from the
    end of the previous one (longest suffix/prefix match) is dropped.
    Windows without boundary info yet (the in-progress tail) get an
    offset continuing from the previous window.
    """
    chunks: List[Dict[str, Any]] = []
    offset = 0.0
    previous_text: List[int] = []

    for index, record in enumerate(history):
        if not record.tokens and not record.finalised:
            continue

        if "offset" in record.extra:
            offset = record.extra["offset"]
        elif index > 0:
            previous = history[index - 1]
            offset = previous.get("offset", offset) + (
                previous.get("chunk_length_s", 0.0)
                - previous.get("stride_length_s", 0.0)
            )

        text_tokens = [t for t in record.tokens if t < eot]
        skip = _overlap_length(previous_text, text_tokens)
        if text_tokens:
            previous_text = text_tokens

        # (start, end, text tokens) in window-local seconds
        segments: List[Tuple[Optional[float], Optional[float], List[int]]] = []
        seg_start: Optional[float] = None
        seg_tokens: List[int] = []
        for token in record.tokens:
            if token >= timestamp_begin:
                t = (token - timestamp_begin) * time_precision
                if seg_start is None:
                    seg_start = t
                else:
                    segments.append((seg_start, t, seg_tokens))
                    seg_start, seg_tokens = None, []
            elif token < eot:
                if skip:
                    skip -= 1
                    continue
                seg_tokens.append(token)
        if seg_tokens:
            segments.append((seg_start, None, seg_tokens))

        for start, end, tokens in segments:
            if not tokens:
                continue
            text = decode(tokens)
            if not text:
                continue
            local_start = start if start is not None else 0.0
            chunks.append(
                {
                    "text": text,
                    "timestamp": [
                        offset + local_start,
                        None if end is None else offset + end,
                    ],
                }
            )

    full_text = "".join(chunk["text"] for chunk in chunks).strip()
    if not return_timestamps:
        return {"text": full_text}
    return {"text": full_text, "chunks": chunks}


def compute_type_for(options: EngineOptions) -> str:
    """Translate load options into a CTranslate2 compute type."""
    if options.device == Device.CPU:
        return CPU_QUANTIZED_COMPUTE_TYPE if options.quantized else CPU_FULL_COMPUTE_TYPE

    key = (
        options.dtype.get(ENCODER_SUBMODEL, FULL_PRECISION),
        options.dtype.get(DECODER_SUBMODEL, FULL_PRECISION),
    )
    try:
        return PRECISION_COMPUTE_TYPES[key]
    except KeyError as e:
        raise ConfigurationError(f"Unsupported precision combination: {key}") from e


# --- faster-whisper implementation -----------------------------------------


class FasterWhisperPipeline(LoadedPipeline):
    """A loaded faster-whisper model driven window by window."""

    def __init__(
        self,
        model: WhisperModel,
        model_name: str,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.model: Optional[WhisperModel] = model
        self.model_name = model_name
        self._clock = clock

    def _require_model(self) -> WhisperModel:
        if self.model is None:
            raise RuntimeError(f"Model '{self.model_name}' has been disposed")
        return self.model

    @property
    def time_precision(self) -> float:
        model = self._require_model()
        feature_extractor = model.feature_extractor
        max_source_positions = feature_extractor.nb_max_frames // model.input_stride
        return feature_extractor.chunk_length / max_source_positions

    def _tokenizer(self, task: str, language: Optional[str]) -> Tokenizer:
        model = self._require_model()
        # Language only selects prompt tokens; decoding does not depend on it.
        return Tokenizer(
            model.hf_tokenizer,
            model.model.is_multilingual,
            task=task,
            language=language or "en",
        )

    def decode_asr(
        self,
        history: Sequence[HistoryRecord],
        time_precision: float,
        return_timestamps: bool = True,
    ) -> Dict[str, Any]:
        tokenizer = self._tokenizer("transcribe", None)
        return merge_token_history(
            history,
            tokenizer.decode,
            tokenizer.timestamp_begin,
            tokenizer.eot,
            time_precision,
            return_timestamps,
        )

    async def generate(
        self, audio: np.ndarray, options: GenerationOptions, on_event: EventCallback
    ) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()

        def emit(event: Any) -> None:
            loop.call_soon_threadsafe(events.put_nowait, event)

        def run() -> Dict[str, Any]:
            try:
                return self._generate(audio, options, emit, stop)
            finally:
                emit(_END_OF_STREAM)

        worker = asyncio.ensure_future(asyncio.to_thread(run))
        try:
            while True:
                event = await events.get()
                if event is _END_OF_STREAM:
                    break
                on_event(event)
        except BaseException:
            # The thread cannot be interrupted; ask it to stop and wait.
            stop.set()
            await asyncio.gather(worker, return_exceptions=True)
            raise

        return await worker

    def _generate(
        self,
        audio: np.ndarray,
        options: GenerationOptions,
        emit: Callable[[Any], None],
        stop: threading.Event,
    ) -> Dict[str, Any]:
        model = self._require_model()
        tokenizer = self._tokenizer(options.task, options.language)
        sampling_rate = model.feature_extractor.sampling_rate

        window = int(options.chunk_length_s * sampling_rate)
        stride = int(options.stride_length_s * sampling_rate)
        step = window - stride
        total = len(audio)
        max_timestamp = tokenizer.timestamp_begin + int(
            round(options.chunk_length_s / options.time_precision)
        )

        def timestamp_token(t: float) -> int:
            token = tokenizer.timestamp_begin + int(round(t / options.time_precision))
            return min(token, max_timestamp)

        history: List[HistoryRecord] = []
        detected_language = options.language

        for start in range(0, max(total - stride, 1), step):
            if stop.is_set():
                logger.info("Generation stopped early")
                break

            end = min(start + window, total)
            is_last = end >= total
            offset = start / sampling_rate

            # Segments decode lazily; token times are spread over each segment
            mark = self._clock()
            segments, info = model.transcribe(
                audio[start:end],
                language=options.language,
                task=options.task,
                beam_size=1,
                best_of=1,
                temperature=0.0 if not options.do_sample else 1.0,
                condition_on_previous_text=False,
                without_timestamps=not options.return_timestamps,
                vad_filter=False,
            )
            detected_language = detected_language or info.language

            window_tokens: List[int] = []
            for segment in segments:
                decoded_at = self._clock()
                text_tokens = [t for t in segment.tokens if t < tokenizer.eot]
                window_tokens.append(timestamp_token(segment.start))
                if options.streaming:
                    self._stream_segment(
                        segment, text_tokens, tokenizer, emit, mark, decoded_at
                    )
                    mark = decoded_at
                    window_tokens.extend(text_tokens)
                    window_tokens.append(timestamp_token(segment.end))
                    continue

                for token in text_tokens:
                    window_tokens.append(token)
                    emit(GenerationStep(output_token_ids=tuple(window_tokens)))
                window_tokens.append(timestamp_token(segment.end))
                emit(GenerationStep(output_token_ids=tuple(window_tokens)))

            info_dict = {
                "tokens": list(window_tokens),
                "offset": offset,
                "chunk_length_s": options.chunk_length_s,
                "stride_length_s": options.stride_length_s,
                "is_last": is_last,
                "language": info.language,
            }
            record = HistoryRecord(finalised=True)
            record.merge(info_dict)
            history.append(record)

            if options.streaming:
                emit(WindowFinalize())
            else:
                emit(ChunkBoundary(info=info_dict))

            logger.debug(
                f"Window at {offset:.1f}s decoded ({len(window_tokens)} tokens, "
                f"last={is_last})"
            )
            if is_last:
                break

        output = merge_token_history(
            history,
            tokenizer.decode,
            tokenizer.timestamp_begin,
            tokenizer.eot,
            options.time_precision,
            options.return_timestamps,
        )
        output["language"] = detected_language
        return output

    @staticmethod
    def _stream_segment(
        segment,
        text_tokens: List[int],
        tokenizer: Tokenizer,
        emit,
        started_at: float,
        decoded_at: float,
    ) -> None:
        """Emit chunk/token/text events for one decoded segment.

        The segment took ``decoded_at - started_at`` to decode; its tokens
        are stamped evenly across that span.
        """
        emit(ChunkStart(time=segment.start))
        decoded: List[int] = []
        printed = ""
        span = decoded_at - started_at
        count = len(text_tokens)
        for i, token in enumerate(text_tokens, start=1):
            emit(TokenEmitted(token_id=token, time=started_at + span * i / count))
            decoded.append(token)
            text = tokenizer.decode(decoded)
            # Wait for the rest of a multi-byte character
            if text.endswith("\ufffd"):
                continue
            delta = text[len(printed) :]
            printed = text
            if delta:
                emit(PartialText(text=delta))
        emit(ChunkEnd(time=segment.end))

    async def dispose(self) -> None:
        if self.model is None:
            return
        model, self.model = self.model, None
        logger.info(f"Unloading model '{self.model_name}'")
        await asyncio.to_thread(model.model.unload_model)


class FasterWhisperEngine(InferenceEngine):
    """Loads faster-whisper (CTranslate2) models."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def _placement(self, options: EngineOptions) -> Tuple[str, str]:
        if options.device == Device.ACCELERATED:
            device = self.config.accelerated_device
        else:
            device = "cpu"
        return device, compute_type_for(options)

    @staticmethod
    def _hub_model_name(model_name: str) -> str:
        """Map a model name onto one faster-whisper can download."""
        sizes = available_models()
        if "/" in model_name or model_name in sizes:
            return model_name
        if model_name.endswith(ENGLISH_ONLY_SUFFIX):
            base = model_name[: -len(ENGLISH_ONLY_SUFFIX)]
            if base in sizes:
                logger.warning(
                    f"No English-only build of '{base}'; loading '{base}' instead"
                )
                return base
        return model_name

    async def _fetch(self, name: str, revision: str) -> str:
        return await asyncio.to_thread(
            download_model,
            name,
            cache_dir=(
                str(self.config.download_root) if self.config.download_root else None
            ),
            local_files_only=self.config.local_files_only,
            revision=revision,
        )

    async def _download(self, name: str, revision: str) -> str:
        # Size aliases point at converted repos that only publish the default revision
        if revision != DEFAULT_REVISION and "/" not in name:
            logger.warning(
                f"'{name}' has no '{revision}' revision; using '{DEFAULT_REVISION}'"
            )
            revision = DEFAULT_REVISION

        try:
            return await self._fetch(name, revision)
        except (RevisionNotFoundError, LocalEntryNotFoundError):
            if revision == DEFAULT_REVISION:
                raise
            logger.warning(
                f"Revision '{revision}' of '{name}' unavailable; "
                f"using '{DEFAULT_REVISION}'"
            )
            return await self._fetch(name, DEFAULT_REVISION)

    async def load(
        self,
        model_name: str,
        options: EngineOptions,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> FasterWhisperPipeline:
        def report(stage: str, **fields: Any) -> None:
            if progress_callback is not None:
                progress_callback(
                    {"status": "progress", "stage": stage, "name": model_name, **fields}
                )

        device, compute_type = self._placement(options)
        report("initiate", revision=options.revision)

        if os.path.isdir(model_name):
            model_path = model_name
        else:
            repo = self._hub_model_name(model_name)
            report("download", revision=options.revision)
            model_path = await self._download(repo, options.revision)
        report("done", path=str(model_path))

        logger.info(
            f"Loading model '{model_name}' (Device: {device}, "
            f"Compute: {compute_type}, Revision: {options.revision})"
        )
        model = await asyncio.to_thread(
            WhisperModel,
            model_path,
            device=device,
            device_index=self.config.device_index,
            compute_type=compute_type,
            cpu_threads=self.config.cpu_threads,
            num_workers=self.config.num_workers,
        )
        report("ready", device=device, compute_type=compute_type)
        return FasterWhisperPipeline(model, model_name)
