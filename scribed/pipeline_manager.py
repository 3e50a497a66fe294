"""Lifecycle of the single loaded inference pipeline."""

import asyncio
import logging
from typing import Optional

from .device_policy import EngineOptions, ModelDescriptor
from .engine import InferenceEngine, LoadedPipeline, ProgressCallback

logger = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    """Raised when the engine fails to load a model."""


class PipelineManager:
    """Owns the one loaded pipeline instance and swaps it on config changes.

    The held slot is ``(descriptor, load)`` where ``load`` is the load task
    itself, published before it is awaited so concurrent callers for the
    same descriptor share it instead of loading twice.
    """

    def __init__(self, engine: InferenceEngine):
        """Initialize the pipeline manager.

        Args:
            engine: Engine used to load new pipeline instances.
        """
        self.engine = engine

        self._descriptor: Optional[ModelDescriptor] = None
        self._load: Optional[asyncio.Future] = None
        self._disposal: Optional[asyncio.Future] = None

    @property
    def descriptor(self) -> Optional[ModelDescriptor]:
        """Descriptor of the held (or loading) instance, if any."""
        return self._descriptor

    @property
    def has_instance(self) -> bool:
        return self._load is not None

    async def resolve(
        self,
        descriptor: ModelDescriptor,
        options: EngineOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> LoadedPipeline:
        """Return a pipeline for ``descriptor``, loading it if needed.

        Args:
            descriptor: Model/device/quantization the caller needs.
            options: Engine load options derived from the descriptor.
            on_progress: Forwarded to the engine's load call as-is.

        Raises:
            ModelLoadError: If the engine fails to load the model.
        """
        while True:
            if self._disposal is not None:
                await self._disposal
                continue

            held = self._load
            if held is None:
                break

            if self._descriptor == descriptor:
                logger.debug(f"Reusing loaded model '{descriptor.model_id}'")
                return await self._wait_for(held, descriptor)

            logger.info(
                f"Model configuration changed ({self._descriptor} -> {descriptor}), "
                "disposing current instance"
            )
            self._load = None
            self._descriptor = None
            self._disposal = asyncio.ensure_future(self._dispose(held))
            try:
                await self._disposal
            finally:
                self._disposal = None

        # No awaits between the checks above and publishing the new load
        logger.info(
            f"Loading model '{descriptor.model_id}' "
            f"(Device: {descriptor.device.value}, Quantized: {descriptor.quantized})"
        )
        load = asyncio.ensure_future(
            self.engine.load(descriptor.model_id, options, on_progress)
        )
        self._load = load
        self._descriptor = descriptor
        return await self._wait_for(load, descriptor)

    async def _wait_for(
        self, load: asyncio.Future, descriptor: ModelDescriptor
    ) -> LoadedPipeline:
        try:
            # Shielded so one cancelled waiter does not abort a shared load
            return await asyncio.shield(load)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._load is load:
                self._load = None
                self._descriptor = None
            raise ModelLoadError(
                f"Failed to load model '{descriptor.model_id}': {e}"
            ) from e

    async def _dispose(self, load: asyncio.Future) -> None:
        try:
            instance = await load
        except Exception as e:
            # The failure was already reported to whoever awaited the load
            logger.debug(f"Skipping disposal of failed load: {e}")
            return
        await instance.dispose()
        logger.info("Previous model instance disposed")

    async def close(self) -> None:
        """Dispose the held instance, if any."""
        if self._disposal is not None:
            await self._disposal

        held = self._load
        if held is None:
            return

        self._load = None
        self._descriptor = None
        await self._dispose(held)
