"""Job channel message models for the scribed worker."""

import base64
import binascii
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import numpy as np
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainValidator,
    RootModel,
    field_validator,
)

ASR_TASK = "automatic-speech-recognition"

# Samples are 32-bit little-endian floats on the wire
AUDIO_DTYPE = np.float32
WIRE_AUDIO_DTYPE = "<f4"


class Device(str, Enum):
    """Where a job's model should run."""

    CPU = "cpu"
    ACCELERATED = "accelerated"


class Subtask(str, Enum):
    """Whisper task selector."""

    TRANSCRIBE = "transcribe"
    TRANSLATE = "translate"


def decode_audio(value: Any) -> np.ndarray:
    """Turn a wire audio value into a 1-D float32 sample buffer.

    Accepts a JSON array of samples or a base64 string of little-endian
    float32 samples. Arrays are passed through after a dtype check.
    """
    if isinstance(value, np.ndarray):
        samples = value.astype(AUDIO_DTYPE, copy=False)
    elif isinstance(value, str):
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"audio is not valid base64: {e}") from e
        if len(raw) % np.dtype(WIRE_AUDIO_DTYPE).itemsize:
            raise ValueError("audio byte length is not a multiple of 4")
        samples = np.frombuffer(raw, dtype=WIRE_AUDIO_DTYPE).astype(AUDIO_DTYPE)
    elif isinstance(value, (list, tuple)):
        samples = np.asarray(value, dtype=AUDIO_DTYPE)
    else:
        raise ValueError(f"Unsupported audio encoding: {type(value).__name__}")

    if samples.ndim != 1:
        raise ValueError(f"audio must be mono (1-D), got shape {samples.shape}")
    if samples.size == 0:
        raise ValueError("audio buffer is empty")
    return samples


class JobRequest(BaseModel):
    """Inbound transcription job."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    audio: Annotated[np.ndarray, PlainValidator(decode_audio)] = Field(repr=False)
    model: str
    multilingual: bool
    quantized: bool
    subtask: Subtask
    # None lets the engine auto-detect
    language: Optional[str] = None
    device: Device = Device.CPU

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Model identifier cannot be empty")
        return v

    @field_validator("language", mode="before")
    @classmethod
    def empty_language_is_auto(cls, v: Any) -> Any:
        return v or None

    @field_validator("device", mode="before")
    @classmethod
    def default_device(cls, v: Any) -> Any:
        return v or Device.CPU


class ProgressMessage(BaseModel):
    """Engine load-progress event, forwarded as-is."""

    model_config = ConfigDict(extra="allow")

    status: Literal["progress"] = "progress"


class UpdateData(BaseModel):
    """Snapshot of the transcript so far."""

    model_config = ConfigDict(extra="allow")

    text: str = ""
    chunks: List[Dict[str, Any]] = Field(default_factory=list)
    tokens_per_second: Optional[float] = None


class UpdateMessage(BaseModel):
    """Emitted after each decoding step."""

    status: Literal["update"] = "update"
    task: Literal["automatic-speech-recognition"] = ASR_TASK
    data: UpdateData


class CompleteMessage(BaseModel):
    """Final transcript for a job."""

    status: Literal["complete"] = "complete"
    task: Literal["automatic-speech-recognition"] = ASR_TASK
    data: Dict[str, Any]


class ErrorPayload(BaseModel):
    """Failure description sent in place of a transcript."""

    message: str
    type: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorPayload":
        return cls(message=str(exc) or repr(exc), type=type(exc).__name__)


class ErrorMessage(BaseModel):
    """Emitted once when a job fails."""

    status: Literal["error"] = "error"
    task: Literal["automatic-speech-recognition"] = ASR_TASK
    data: ErrorPayload


# Use discriminated union for message serialization
WorkerMessage = Annotated[
    Union[ProgressMessage, UpdateMessage, CompleteMessage, ErrorMessage],
    Field(discriminator="status"),
]


# Wrapper for easy message serialization using RootModel
class MessageWrapper(RootModel[WorkerMessage]):
    """Wrapper model for outgoing worker messages."""

    root: WorkerMessage

    def __getattr__(self, name: str):
        """Delegate attribute access to the root message."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)
