"""
Parallel analysis orchestrator.

One run takes a captured photo through:

    upload -> summary -> body language -> contextual emotion -> owner advice
           -> cat jokes (only for content/playful moods)

and reports progress as an ordered stream of ``ParallelAnalysisUpdate``
events. Upload and summary are mandatory: their failure ends the run with a
single ``Failed`` event. Detail stages are optional: their failures are
collected and reported once, as the final ``PartialFailures`` event.

Three backend contracts are supported (see Settings.backend_contract):
1. upload - multipart upload, then one request per stage with the fileUri
2. inline - one request per stage with the photo embedded as a data URL
3. stream - one text/event-stream request that reports every stage
"""

import asyncio
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from purrplexed.config import settings
from purrplexed.services.analysis_events import (
    Failed,
    PartialFailures,
    Started,
    UploadCompleted,
    UploadStarted,
    stage_completed,
)
from purrplexed.services.analysis_schemas import (
    DETAIL_STAGES,
    CapturedPhoto,
    ErrorEnvelope,
    Stage,
)
from purrplexed.services.exceptions import (
    AnalysisCancelledError,
    AnalysisError,
    InvalidResponseError,
    ServerError,
)
from purrplexed.services.image_encoder import ImageEncoder, fingerprint
from purrplexed.services.response_decoder import ResponseDecoder
from purrplexed.services.transport import AnalysisTransport, StreamStatusError


logger = logging.getLogger(__name__)

# User-facing message for every fatal failure; details go to the log
GENERIC_FAILURE_MESSAGE = "Analysis failed"

UPLOAD_FILENAME = "cat_image.jpg"
UPLOAD_MIME_TYPE = "image/jpeg"

_END = object()

Emit = Callable[[Any], None]


class CancellationToken:
    """Cooperative cancellation flag checked around every network call."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AnalysisCancelledError("Analysis run cancelled")


class AnalysisStream:
    """
    Lazily started, cancellable async iterator over one run's updates.

    The run starts on the first ``__anext__``. ``cancel()`` stops the run,
    aborts any in-flight request and ends iteration without further events.
    Use as ``async with`` (or call ``aclose()``) to guarantee cleanup; a
    stream dropped mid-run without either cancels its run when collected.
    """

    def __init__(self, producer: Callable[[Emit, CancellationToken], Awaitable[None]]):
        self._producer = producer
        self._queue: asyncio.Queue = asyncio.Queue()
        self.token = CancellationToken()
        self._task: Optional[asyncio.Task] = None
        self._done = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._done:
            raise StopAsyncIteration
        if self._task is None:
            # The task must not reference the stream, or it could never be collected
            self._task = asyncio.create_task(
                _drive(self._producer, self._queue, self.token)
            )

        item = await self._queue.get()
        if item is _END or self.token.cancelled:
            self._done = True
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def __del__(self):
        task = self._task
        if task is not None and not task.done() and not task.get_loop().is_closed():
            logger.debug("Analysis stream dropped mid-run, cancelling")
            self.token.cancel()
            task.cancel()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        """Stop the run. Safe to call repeatedly and after completion."""
        if self.token.cancelled:
            return
        self.token.cancel()
        self._done = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._queue.put_nowait(_END)

    async def aclose(self) -> None:
        """Cancel the run if still active and wait for it to unwind."""
        if self._task is not None and not self._task.done():
            self.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._done = True


async def _drive(producer, queue: asyncio.Queue, token: CancellationToken) -> None:
    def emit(update) -> None:
        # Results that land after cancellation are discarded
        if not token.cancelled:
            queue.put_nowait(update)

    try:
        await producer(emit, token)
    finally:
        queue.put_nowait(_END)


@dataclass
class _Run:
    photo: CapturedPhoto
    emit: Emit
    token: CancellationToken
    fingerprint: str
    started_at: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


def _partial_error(stage: Stage, error: Exception) -> str:
    return f"{stage.label} analysis failed: {error}"


class _OrderedStageEmitter:
    """
    Emits stage results in logical stage order, whatever order they resolve in.

    A stage resolves either to a decoded result (emitted as its ``*Completed``
    event) or to an error string (collected into ``errors``). Nothing for a
    later stage is emitted until every earlier stage has resolved.
    """

    def __init__(self, stages: list[Stage], emit: Emit):
        self._pending = list(stages)
        self._outcomes: dict[Stage, tuple[Any, Optional[str]]] = {}
        self._emit = emit
        self.errors: list[str] = []

    @property
    def expected(self) -> list[Stage]:
        return list(self._pending) + list(self._outcomes)

    def unresolved(self) -> list[Stage]:
        return [stage for stage in self._pending if stage not in self._outcomes]

    def resolve(self, stage: Stage, result: Any = None, error: Optional[str] = None) -> None:
        if stage not in self._pending or stage in self._outcomes:
            return
        self._outcomes[stage] = (result, error)
        while self._pending and self._pending[0] in self._outcomes:
            head = self._pending.pop(0)
            result, error = self._outcomes.pop(head)
            if error is not None:
                self.errors.append(error)
            else:
                self._emit(stage_completed(head, result))


def _parse_event_line(line: str) -> Optional[dict]:
    """Parse one ``data: {...}`` line of the streamed contract."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    raw = line[len("data:"):].strip()
    if not raw:
        return None
    try:
        message = json.loads(raw)
    except ValueError:
        logger.warning("Skipping undecodable stream line: %s", raw[:200])
        return None
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        logger.warning("Skipping stream message without event name")
        return None
    return message


class ParallelAnalysisService:
    """Runs the staged cat analysis against an injected transport."""

    def __init__(
        self,
        transport: AnalysisTransport,
        decoder: Optional[ResponseDecoder] = None,
        encoder: Optional[ImageEncoder] = None,
        backend_contract: Optional[str] = None,
        detail_concurrency: Optional[str] = None,
        upload_path: Optional[str] = None,
        analyze_path: Optional[str] = None,
    ):
        self.transport = transport
        self.decoder = decoder or ResponseDecoder()
        self.encoder = encoder or ImageEncoder()
        self.backend_contract = backend_contract or settings.backend_contract
        self.detail_concurrency = detail_concurrency or settings.detail_concurrency
        self.upload_path = upload_path or settings.upload_path
        self.analyze_path = analyze_path or settings.analyze_path

        if self.backend_contract not in ("upload", "inline", "stream"):
            raise ValueError(f"Unknown backend contract: {self.backend_contract}")
        if self.detail_concurrency not in ("sequential", "concurrent"):
            raise ValueError(f"Unknown detail concurrency: {self.detail_concurrency}")

    def analyze_parallel(self, photo: CapturedPhoto) -> AnalysisStream:
        """
        Start (lazily) an analysis run for one photo.

        Returns:
            AnalysisStream yielding ParallelAnalysisUpdate events. The first
            event is always Started; the stream ends silently on success or
            after exactly one Failed event.
        """
        return AnalysisStream(lambda emit, token: self._run(photo, emit, token))

    # =========================================================================
    # RUN LIFECYCLE
    # =========================================================================

    async def _run(self, photo: CapturedPhoto, emit: Emit, token: CancellationToken) -> None:
        run = _Run(
            photo=photo, emit=emit, token=token, fingerprint=fingerprint(photo.image_data)
        )
        logger.info(
            "Preparing analysis fingerprint=%s size=%d bytes contract=%s",
            run.fingerprint,
            len(photo.image_data),
            self.backend_contract,
        )
        emit(Started())

        try:
            if self.backend_contract == "stream":
                await self._run_streamed(run)
            else:
                await self._run_staged(run)
            logger.info(
                "Analysis completed fingerprint=%s duration=%.3fs",
                run.fingerprint,
                run.elapsed(),
            )
        except AnalysisCancelledError:
            logger.info("Analysis cancelled fingerprint=%s", run.fingerprint)
        except asyncio.CancelledError:
            logger.info("Analysis task cancelled fingerprint=%s", run.fingerprint)
            raise
        except AnalysisError as e:
            logger.error(
                "Analysis failed fingerprint=%s duration=%.3fs: %s",
                run.fingerprint,
                run.elapsed(),
                e,
            )
            emit(Failed(message=GENERIC_FAILURE_MESSAGE))
        except Exception:
            logger.exception("Unexpected analysis error fingerprint=%s", run.fingerprint)
            emit(Failed(message=GENERIC_FAILURE_MESSAGE))

    # =========================================================================
    # STAGED CONTRACTS (upload / inline)
    # =========================================================================

    async def _run_staged(self, run: _Run) -> None:
        source = await self._prepare_source(run)

        summary = await self._request_stage(run, source, Stage.SUMMARY, context=None)
        run.emit(stage_completed(Stage.SUMMARY, summary))
        context = {Stage.SUMMARY.value: summary.to_context()}

        stages = list(DETAIL_STAGES)
        if summary.wants_jokes:
            stages.append(Stage.CAT_JOKES)
        else:
            logger.debug("Skipping jokes for mood=%s", summary.mood_type)

        if self.detail_concurrency == "concurrent":
            errors = await self._run_details_concurrently(run, source, stages, context)
        else:
            errors = await self._run_details_sequentially(run, source, stages, context)

        if errors:
            run.emit(PartialFailures(errors=errors))

    async def _prepare_source(self, run: _Run) -> dict:
        """Upload the photo, or encode it inline, and return the request source."""
        if self.backend_contract == "upload":
            run.token.raise_if_cancelled()
            run.emit(UploadStarted())
            file_uri = await self._upload(run)
            run.emit(UploadCompleted(file_uri=file_uri))
            return {"fileUri": file_uri}

        data_url = await asyncio.to_thread(self.encoder.to_data_url, run.photo.image_data)
        run.token.raise_if_cancelled()
        return {"images": [data_url]}

    async def _upload(self, run: _Run) -> str:
        start_time = time.monotonic()
        response = await self.transport.post_multipart(
            self.upload_path,
            fields={},
            file_field="file",
            file_bytes=run.photo.image_data,
            filename=UPLOAD_FILENAME,
            mime_type=UPLOAD_MIME_TYPE,
        )
        run.token.raise_if_cancelled()
        self.decoder.raise_for_status(response.status_code, response.body, "Upload")
        upload = self.decoder.decode_upload(response.body)
        logger.info(
            "Upload completed fingerprint=%s duration=%.3fs",
            run.fingerprint,
            time.monotonic() - start_time,
        )
        return upload.file_uri

    async def _request_stage(
        self, run: _Run, source: dict, stage: Stage, context: Optional[dict]
    ):
        body = {**source, "analysisType": stage.value}
        if context is not None:
            body["context"] = dict(context)

        run.token.raise_if_cancelled()
        start_time = time.monotonic()
        response = await self.transport.post_json(self.analyze_path, body)
        run.token.raise_if_cancelled()

        self.decoder.raise_for_status(response.status_code, response.body, stage.label)
        result = self.decoder.decode_stage(stage, response.body)
        logger.info(
            "Stage decoded fingerprint=%s stage=%s duration=%.3fs",
            run.fingerprint,
            stage.value,
            time.monotonic() - start_time,
        )
        return result

    async def _run_details_sequentially(
        self, run: _Run, source: dict, stages: list[Stage], context: dict
    ) -> list[str]:
        """Each stage sees the context accumulated by every stage before it."""
        errors = []
        for stage in stages:
            try:
                result = await self._request_stage(run, source, stage, context)
            except AnalysisCancelledError:
                raise
            except AnalysisError as e:
                logger.warning(
                    "%s analysis skipped fingerprint=%s: %s", stage.label, run.fingerprint, e
                )
                errors.append(_partial_error(stage, e))
                continue
            context[stage.value] = result.to_context()
            run.emit(stage_completed(stage, result))
        return errors

    async def _run_details_concurrently(
        self, run: _Run, source: dict, stages: list[Stage], context: dict
    ) -> list[str]:
        """
        Fire every detail stage at once with the summary-only context.

        Results are still emitted in stage order: a fast later stage waits for
        the slower earlier ones before its event goes out.
        """
        summary_context = dict(context)
        tasks = [
            asyncio.create_task(self._request_stage(run, source, stage, summary_context))
            for stage in stages
        ]
        errors = []
        try:
            for stage, task in zip(stages, tasks):
                try:
                    result = await task
                except AnalysisCancelledError:
                    raise
                except AnalysisError as e:
                    logger.warning(
                        "%s analysis skipped fingerprint=%s: %s",
                        stage.label,
                        run.fingerprint,
                        e,
                    )
                    errors.append(_partial_error(stage, e))
                    continue
                context[stage.value] = result.to_context()
                run.emit(stage_completed(stage, result))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return errors

    # =========================================================================
    # STREAMED CONTRACT
    # =========================================================================

    async def _run_streamed(self, run: _Run) -> None:
        data_url = await asyncio.to_thread(self.encoder.to_data_url, run.photo.image_data)
        body = {"images": [data_url], "stream": True}

        state = _StreamState(run, self.decoder)
        run.token.raise_if_cancelled()
        try:
            async with aclosing(
                self.transport.stream_lines(self.analyze_path, body)
            ) as lines:
                async for line in lines:
                    run.token.raise_if_cancelled()
                    message = _parse_event_line(line)
                    if message is None:
                        continue
                    if state.handle(message["event"], message.get("payload")):
                        break
        except StreamStatusError as e:
            self.decoder.raise_for_status(
                e.response.status_code, e.response.body, "Analysis"
            )
        run.token.raise_if_cancelled()
        state.finish()


class _StreamState:
    """Folds streamed stage events into ordered updates for one run."""

    def __init__(self, run: _Run, decoder: ResponseDecoder):
        self.run = run
        self.decoder = decoder
        self.summary = None
        self.emitter: Optional[_OrderedStageEmitter] = None
        self._early: dict[Stage, Any] = {}
        self._early_errors: dict[Stage, str] = {}
        self.terminal_error: Optional[str] = None

    def handle(self, event: str, payload: Any) -> bool:
        """Apply one stream message. Returns True once the stream is terminal."""
        if event == "complete":
            return True
        if event == "error":
            return self._handle_error(payload)

        stage = Stage.from_wire(event)
        if stage is None:
            logger.debug("Ignoring unknown stream event %s", event)
            return False

        if stage is Stage.SUMMARY:
            self._handle_summary(payload)
        elif self.summary is None:
            self._early[stage] = payload
        else:
            self._resolve(stage, payload)
        return False

    def _handle_summary(self, payload: Any) -> None:
        if self.summary is not None:
            logger.debug("Ignoring repeated summary event")
            return
        # Mandatory stage: decode errors propagate and fail the run
        self.summary = self.decoder.decode_payload(Stage.SUMMARY, payload)
        self.run.emit(stage_completed(Stage.SUMMARY, self.summary))

        stages = list(DETAIL_STAGES)
        if self.summary.wants_jokes:
            stages.append(Stage.CAT_JOKES)
        self.emitter = _OrderedStageEmitter(stages, self.run.emit)
        for stage, early_payload in self._early.items():
            self._resolve(stage, early_payload)
        for stage, message in self._early_errors.items():
            self._resolve_error(stage, message)
        self._early.clear()
        self._early_errors.clear()

    def _resolve(self, stage: Stage, payload: Any) -> None:
        if stage not in self.emitter.expected:
            logger.debug("Ignoring unexpected stream stage %s", stage.value)
            return
        try:
            result = self.decoder.decode_payload(stage, payload)
        except AnalysisError as e:
            logger.warning(
                "%s analysis skipped fingerprint=%s: %s",
                stage.label,
                self.run.fingerprint,
                e,
            )
            self.emitter.resolve(stage, error=_partial_error(stage, e))
            return
        self.emitter.resolve(stage, result=result)

    def _resolve_error(self, stage: Stage, message: str) -> None:
        if stage not in self.emitter.expected:
            logger.debug("Ignoring error for unexpected stream stage %s", stage.value)
            return
        self.emitter.resolve(stage, error=f"{stage.label} analysis failed: {message}")

    def _handle_error(self, payload: Any) -> bool:
        envelope = ErrorEnvelope.model_validate(payload if isinstance(payload, dict) else {})
        message = envelope.describe("Analysis")
        stage_name = payload.get("stage") if isinstance(payload, dict) else None
        stage = Stage.from_wire(stage_name) if isinstance(stage_name, str) else None

        if stage is not None and stage is not Stage.SUMMARY:
            if self.summary is None:
                self._early_errors[stage] = message
            else:
                self._resolve_error(stage, message)
            return False
        if self.summary is None:
            raise ServerError(message)
        self.terminal_error = message
        return True

    def finish(self) -> None:
        """Resolve stages the stream never delivered and report partial failures."""
        if self.summary is None:
            raise InvalidResponseError("Stream ended before the summary stage")

        reason = self.terminal_error or "no result received"
        for stage in self.emitter.unresolved():
            self.emitter.resolve(stage, error=f"{stage.label} analysis failed: {reason}")
        if self.emitter.errors:
            self.run.emit(PartialFailures(errors=self.emitter.errors))
