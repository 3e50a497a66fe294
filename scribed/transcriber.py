"""Job orchestration: resolve a pipeline, stream, report."""

import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .device_policy import resolve_model, window_lengths
from .engine import GenerationOptions
from .ipc_models import (
    CompleteMessage,
    Device,
    ErrorMessage,
    ErrorPayload,
    JobRequest,
    ProgressMessage,
    UpdateData,
    UpdateMessage,
)
from .pipeline_manager import PipelineManager
from .streaming import (
    AcceleratedStreamingSession,
    CpuStreamingSession,
    StreamingSession,
)

logger = logging.getLogger(__name__)

MessageSender = Callable[[BaseModel], None]


class Transcriber:
    """Runs transcription jobs against the managed pipeline."""

    def __init__(
        self,
        pipeline_manager: PipelineManager,
        clock: Callable[[], float] = time.perf_counter,
    ):
        """Initialize the transcriber.

        Args:
            pipeline_manager: Owner of the loaded pipeline instance.
            clock: Monotonic clock in seconds, used for token throughput.
        """
        self.pipeline_manager = pipeline_manager
        self._clock = clock

    async def transcribe(
        self, job: JobRequest, send: MessageSender
    ) -> Optional[Dict[str, Any]]:
        """Run one job, emitting progress/update messages and a final result.

        Exactly one ``complete`` or ``error`` message is sent per job.

        Returns:
            The final transcript payload, or None if the job failed.
        """
        logger.info(
            f"Transcribing {len(job.audio)} samples with '{job.model}' "
            f"(Device: {job.device.value}, Task: {job.subtask.value}, "
            f"Language: {job.language or 'auto'})"
        )

        def send_progress(data: Dict[str, Any]) -> None:
            send(ProgressMessage(**data))

        def send_update(data: UpdateData) -> None:
            send(UpdateMessage(data=data))

        try:
            descriptor, engine_options = resolve_model(
                job.model, job.multilingual, job.device, job.quantized
            )
            pipeline = await self.pipeline_manager.resolve(
                descriptor, engine_options, send_progress
            )
        except Exception as e:
            logger.exception(f"Failed to prepare model '{job.model}'")
            send(ErrorMessage(data=ErrorPayload.from_exception(e)))
            return None

        chunk_length_s, stride_length_s = window_lengths(job.model)

        try:
            time_precision = pipeline.time_precision
            options = GenerationOptions(
                chunk_length_s=chunk_length_s,
                stride_length_s=stride_length_s,
                time_precision=time_precision,
                task=job.subtask.value,
                language=job.language,
                streaming=job.device == Device.ACCELERATED,
            )

            session: StreamingSession
            if options.streaming:
                session = AcceleratedStreamingSession(
                    chunk_length_s, stride_length_s, send_update, clock=self._clock
                )
            else:
                session = CpuStreamingSession(pipeline, time_precision, send_update)

            output = await pipeline.generate(job.audio, options, session.handle)
        except Exception as e:
            logger.exception("Transcription failed")
            send(ErrorMessage(data=ErrorPayload.from_exception(e)))
            return None

        result = session.result(output)
        logger.info(f"Transcription complete: {str(result.get('text', ''))[:100]}")
        send(CompleteMessage(data=result))
        return result
