"""
Consumer side of an analysis run.

``AnalysisSession`` drives one run at a time for a caller (the CLI, the SSE
relay): it gates the run on the usage quota, settles the quota reservation,
and folds the update stream into an ``AnalysisSnapshot`` a UI can render.
Starting a new run cancels the one in flight.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from purrplexed.services.analysis_events import (
    BodyLanguageCompleted,
    CatJokesCompleted,
    ContextualEmotionCompleted,
    EmotionSummaryCompleted,
    Failed,
    OwnerAdviceCompleted,
    PartialFailures,
    UploadCompleted,
    is_stage_result,
)
from purrplexed.services.analysis_schemas import (
    BodyLanguageAnalysis,
    CapturedPhoto,
    CatJokes,
    ContextualEmotion,
    EmotionSummary,
    OwnerAdvice,
)
from purrplexed.services.exceptions import QuotaExceededError
from purrplexed.services.parallel_analysis_service import (
    AnalysisStream,
    ParallelAnalysisService,
)
from purrplexed.services.usage_meter import UsageMeter


logger = logging.getLogger(__name__)


class AnalysisState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


# Progress reached once an update of this kind has been seen
PROGRESS_BY_KIND = {
    "uploadStarted": 0.1,
    "uploadCompleted": 0.2,
    "emotionSummaryCompleted": 0.4,
    "bodyLanguageCompleted": 0.6,
    "contextualEmotionCompleted": 0.8,
    "ownerAdviceCompleted": 1.0,
}


@dataclass(frozen=True)
class AnalysisSnapshot:
    """Everything known about the current run, rebuilt on every update."""

    state: AnalysisState = AnalysisState.IDLE
    progress: float = 0.0
    file_uri: Optional[str] = None
    summary: Optional[EmotionSummary] = None
    body_language: Optional[BodyLanguageAnalysis] = None
    contextual_emotion: Optional[ContextualEmotion] = None
    owner_advice: Optional[OwnerAdvice] = None
    cat_jokes: Optional[CatJokes] = None
    partial_failures: tuple[str, ...] = ()
    error_message: Optional[str] = None

    def apply(self, update) -> "AnalysisSnapshot":
        progress = max(self.progress, PROGRESS_BY_KIND.get(update.kind, 0.0))
        snapshot = replace(self, progress=progress)

        if isinstance(update, UploadCompleted):
            return replace(snapshot, file_uri=update.file_uri)
        if isinstance(update, EmotionSummaryCompleted):
            return replace(snapshot, summary=update.result)
        if isinstance(update, BodyLanguageCompleted):
            return replace(snapshot, body_language=update.result)
        if isinstance(update, ContextualEmotionCompleted):
            return replace(snapshot, contextual_emotion=update.result)
        if isinstance(update, OwnerAdviceCompleted):
            return replace(snapshot, owner_advice=update.result)
        if isinstance(update, CatJokesCompleted):
            return replace(snapshot, cat_jokes=update.result)
        if isinstance(update, PartialFailures):
            return replace(snapshot, partial_failures=tuple(update.errors))
        if isinstance(update, Failed):
            return replace(
                snapshot, state=AnalysisState.ERROR, error_message=update.message
            )
        return snapshot

    def finished(self) -> "AnalysisSnapshot":
        if self.state is not AnalysisState.PROCESSING:
            return self
        return replace(self, state=AnalysisState.READY, progress=1.0)


class _UsageLedger:
    """Settles one reservation exactly once: commit or rollback."""

    def __init__(self, meter: UsageMeter):
        self.meter = meter
        self.committed = False
        self.settled = False

    def commit(self) -> None:
        if self.settled:
            return
        self.meter.commit()
        self.committed = True
        self.settled = True

    def rollback(self) -> None:
        if self.settled:
            return
        self.meter.rollback()
        self.settled = True


class AnalysisSession:
    def __init__(self, service: ParallelAnalysisService, meter: UsageMeter):
        self.service = service
        self.meter = meter
        self.snapshot = AnalysisSnapshot()
        self._stream: Optional[AnalysisStream] = None
        self._ledger: Optional[_UsageLedger] = None
        self._task: Optional[asyncio.Task] = None

    def ensure_quota(self) -> None:
        """Raise QuotaExceededError when no free analysis is left today."""
        if not self.meter.can_start_job():
            logger.info("Analysis refused, daily quota exhausted")
            raise QuotaExceededError(self.meter.daily_limit)

    async def updates(self, photo: CapturedPhoto) -> AsyncIterator:
        """
        Run one analysis and yield its updates as they arrive.

        The quota slot is reserved before the run starts, committed on the
        first stage result, and rolled back if the run ends (failed,
        cancelled, or abandoned by the caller) without one.

        Raises:
            QuotaExceededError: If the daily quota is used up
        """
        # Replacing a run frees its slot before the quota check
        self.cancel()
        self.ensure_quota()

        self.meter.reserve()
        ledger = _UsageLedger(self.meter)
        self._ledger = ledger
        stream = self.service.analyze_parallel(photo)
        self._stream = stream
        self.snapshot = AnalysisSnapshot(state=AnalysisState.PROCESSING)

        try:
            async for update in stream:
                if is_stage_result(update):
                    ledger.commit()
                if self._stream is stream:
                    self.snapshot = self.snapshot.apply(update)
                yield update

            if self._stream is stream:
                if stream.cancelled:
                    self.snapshot = replace(self.snapshot, state=AnalysisState.IDLE)
                else:
                    self.snapshot = self.snapshot.finished()
        finally:
            if not ledger.committed:
                logger.info("Run ended without a stage result, releasing quota slot")
            ledger.rollback()
            await stream.aclose()

    async def run(
        self,
        photo: CapturedPhoto,
        on_update: Optional[Callable[[AnalysisSnapshot, object], None]] = None,
    ) -> AnalysisSnapshot:
        """Consume a whole run, calling ``on_update`` after each update."""
        async for update in self.updates(photo):
            if on_update is not None:
                on_update(self.snapshot, update)
        return self.snapshot

    def start(
        self,
        photo: CapturedPhoto,
        on_update: Optional[Callable[[AnalysisSnapshot, object], None]] = None,
    ) -> asyncio.Task:
        """Run in the background, cancelling any run already in flight."""
        self.cancel()
        self._task = asyncio.create_task(self.run(photo, on_update))
        return self._task

    def cancel(self) -> None:
        """Cancel the in-flight run. Its quota reservation is rolled back."""
        if self._stream is not None:
            self._stream.cancel()
        if self._ledger is not None:
            self._ledger.rollback()
