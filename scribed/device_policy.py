"""Device-specific model naming and precision selection.

Everything here is a pure function of the job's model id, device and
quantization flag. The result is a ``ModelDescriptor`` identifying the
loaded instance plus the ``EngineOptions`` used to load it.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from .ipc_models import ASR_TASK, Device

logger = logging.getLogger(__name__)

DEFAULT_REVISION = "main"
# Revision of the medium checkpoints exported without attention outputs
NO_ATTENTIONS_REVISION = "no_attentions"

ENGLISH_ONLY_SUFFIX = ".en"

# Precision identifiers understood by the engine adapter
FULL_PRECISION = "fp32"
HALF_PRECISION = "fp16"
QUANTIZED_4BIT = "q4"

ENCODER_SUBMODEL = "encoder_model"
DECODER_SUBMODEL = "decoder_model_merged"

# Large turbo checkpoints whose encoder must stay in full precision
FULL_PRECISION_ENCODER_MODELS = frozenset(
    {
        "onnx-community/whisper-large-v3-turbo",
        "openai/whisper-large-v3-turbo",
        "large-v3-turbo",
        "turbo",
    }
)

# Sliding-window geometry (seconds)
DEFAULT_CHUNK_LENGTH_S = 30
DEFAULT_STRIDE_LENGTH_S = 5
DISTIL_CHUNK_LENGTH_S = 20
DISTIL_STRIDE_LENGTH_S = 3


class ConfigurationError(ValueError):
    """Raised when a job names a device or model the policy cannot map."""


@dataclass(frozen=True)
class ModelDescriptor:
    """Identifies which engine configuration is currently loaded."""

    model_id: str
    quantized: bool
    device: Device
    task: str = ASR_TASK


@dataclass
class EngineOptions:
    """Load-time options passed to the inference engine."""

    device: Device
    revision: str = DEFAULT_REVISION
    # CPU path only
    quantized: Optional[bool] = None
    # Accelerated path only: precision per sub-model
    dtype: Dict[str, str] = field(default_factory=dict)


def parse_device(device: Union[Device, str, None]) -> Device:
    """Coerce a device value, failing loudly on anything unrecognized."""
    if device is None:
        return Device.CPU
    if isinstance(device, Device):
        return device
    try:
        return Device(device)
    except ValueError as e:
        allowed = ", ".join(d.value for d in Device)
        raise ConfigurationError(
            f"Unrecognized device {device!r} (expected one of: {allowed})"
        ) from e


def is_distil_model(model: str) -> bool:
    """Return True for distil-whisper checkpoints."""
    return model.startswith("distil-whisper/") or model.startswith("distil-")


def normalize_model_name(model: str, multilingual: bool, device: Device) -> str:
    """Pick the English-only variant for monolingual CPU jobs."""
    if not is_distil_model(model) and not multilingual and device == Device.CPU:
        return model + ENGLISH_ONLY_SUFFIX
    return model


def is_medium_model(model: str) -> bool:
    """Return True for whisper-medium checkpoints (hub ids or bare size names)."""
    if "whisper-medium" in model:
        return True
    return model.rsplit("/", 1)[-1].startswith("medium")


def select_revision(model: str) -> str:
    """Medium models load a revision without attention tensors to save memory."""
    if is_medium_model(model):
        return NO_ATTENTIONS_REVISION
    return DEFAULT_REVISION


def window_lengths(model: str) -> Tuple[int, int]:
    """Return ``(chunk_length_s, stride_length_s)`` for a model."""
    if is_distil_model(model):
        return DISTIL_CHUNK_LENGTH_S, DISTIL_STRIDE_LENGTH_S
    return DEFAULT_CHUNK_LENGTH_S, DEFAULT_STRIDE_LENGTH_S


def build_engine_options(
    model_name: str, device: Union[Device, str], quantized: bool
) -> EngineOptions:
    """Build engine load options for an already-normalized model name.

    Raises:
        ConfigurationError: If the device is not recognized.
    """
    device = parse_device(device)
    revision = select_revision(model_name)

    if device == Device.ACCELERATED:
        encoder_precision = (
            FULL_PRECISION
            if model_name in FULL_PRECISION_ENCODER_MODELS
            else HALF_PRECISION
        )
        # Half-precision decoding is numerically unstable here, so the
        # decoder is always 4-bit quantized.
        return EngineOptions(
            device=device,
            revision=revision,
            dtype={
                ENCODER_SUBMODEL: encoder_precision,
                DECODER_SUBMODEL: QUANTIZED_4BIT,
            },
        )

    if device == Device.CPU:
        return EngineOptions(device=device, revision=revision, quantized=quantized)

    raise ConfigurationError(f"No engine configuration for device {device!r}")


def resolve_model(
    model: str,
    multilingual: bool,
    device: Union[Device, str, None],
    quantized: bool,
) -> Tuple[ModelDescriptor, EngineOptions]:
    """Map a job's model selection to a descriptor and engine options."""
    device = parse_device(device)
    model_name = normalize_model_name(model, multilingual, device)
    options = build_engine_options(model_name, device, quantized)

    logger.debug(
        f"Resolved model '{model}' -> '{model_name}' "
        f"(Device: {device.value}, Revision: {options.revision}, "
        f"Quantized: {options.quantized}, Dtype: {options.dtype or None})"
    )
    return ModelDescriptor(model_id=model_name, quantized=quantized, device=device), options
