"""
Progress events emitted by one parallel analysis run.

``ParallelAnalysisUpdate`` is a closed, discriminated union on ``kind``. A run
emits an ordered, append-only sequence that always starts with ``Started``
and ends either silently (success), with ``PartialFailures`` as the last
event (success with degraded stages), or with exactly one ``Failed``.
"""

import json
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from purrplexed.services.analysis_schemas import (
    BodyLanguageAnalysis,
    CatJokes,
    ContextualEmotion,
    EmotionSummary,
    OwnerAdvice,
    Stage,
)


class _Update(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"kind"})

    def to_wire(self) -> dict:
        """``{"event", "payload"}`` form shared with the streamed backend contract."""
        return {"event": self.kind, "payload": self.payload()}

    def to_sse(self) -> dict:
        """Event dict for sse_starlette's EventSourceResponse."""
        return {"event": self.kind, "data": json.dumps(self.to_wire())}


class Started(_Update):
    kind: Literal["started"] = "started"


class UploadStarted(_Update):
    kind: Literal["uploadStarted"] = "uploadStarted"


class UploadCompleted(_Update):
    kind: Literal["uploadCompleted"] = "uploadCompleted"
    file_uri: str = Field(alias="fileUri")


class _StageCompleted(_Update):
    stage: ClassVar[Stage]

    def payload(self) -> dict:
        return self.result.to_context()


class EmotionSummaryCompleted(_StageCompleted):
    stage: ClassVar[Stage] = Stage.SUMMARY
    kind: Literal["emotionSummaryCompleted"] = "emotionSummaryCompleted"
    result: EmotionSummary


class BodyLanguageCompleted(_StageCompleted):
    stage: ClassVar[Stage] = Stage.BODY_LANGUAGE
    kind: Literal["bodyLanguageCompleted"] = "bodyLanguageCompleted"
    result: BodyLanguageAnalysis


class ContextualEmotionCompleted(_StageCompleted):
    stage: ClassVar[Stage] = Stage.CONTEXTUAL_EMOTION
    kind: Literal["contextualEmotionCompleted"] = "contextualEmotionCompleted"
    result: ContextualEmotion


class OwnerAdviceCompleted(_StageCompleted):
    stage: ClassVar[Stage] = Stage.OWNER_ADVICE
    kind: Literal["ownerAdviceCompleted"] = "ownerAdviceCompleted"
    result: OwnerAdvice


class CatJokesCompleted(_StageCompleted):
    stage: ClassVar[Stage] = Stage.CAT_JOKES
    kind: Literal["catJokesCompleted"] = "catJokesCompleted"
    result: CatJokes


class PartialFailures(_Update):
    kind: Literal["partialFailures"] = "partialFailures"
    errors: tuple[str, ...]


class Failed(_Update):
    kind: Literal["failed"] = "failed"
    message: str


ParallelAnalysisUpdate = Annotated[
    Union[
        Started,
        UploadStarted,
        UploadCompleted,
        EmotionSummaryCompleted,
        BodyLanguageCompleted,
        ContextualEmotionCompleted,
        OwnerAdviceCompleted,
        CatJokesCompleted,
        PartialFailures,
        Failed,
    ],
    Field(discriminator="kind"),
]

update_adapter = TypeAdapter(ParallelAnalysisUpdate)

STAGE_EVENTS: dict[Stage, type[_StageCompleted]] = {
    Stage.SUMMARY: EmotionSummaryCompleted,
    Stage.BODY_LANGUAGE: BodyLanguageCompleted,
    Stage.CONTEXTUAL_EMOTION: ContextualEmotionCompleted,
    Stage.OWNER_ADVICE: OwnerAdviceCompleted,
    Stage.CAT_JOKES: CatJokesCompleted,
}


def stage_completed(stage: Stage, result) -> _StageCompleted:
    """Build the ``*Completed`` event for a decoded stage result."""
    return STAGE_EVENTS[stage](result=result)


def is_stage_result(update) -> bool:
    return isinstance(update, _StageCompleted)
