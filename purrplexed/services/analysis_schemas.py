"""
Pydantic models for the decoded analysis stage results.

Each schema corresponds to one analysis stage's payload. Field names are
snake_case in Python and camelCase on the wire (the current backend layout);
legacy snake_case payload keys are folded in by response_decoder before
validation, so these models only ever see one layout.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


@dataclass(frozen=True)
class CapturedPhoto:
    """Raw image bytes handed to one analysis run."""

    image_data: bytes


class Stage(str, Enum):
    """One named sub-analysis request."""

    SUMMARY = "summary"
    BODY_LANGUAGE = "bodyLanguage"
    CONTEXTUAL_EMOTION = "contextualEmotion"
    OWNER_ADVICE = "ownerAdvice"
    CAT_JOKES = "catJokes"

    @property
    def legacy_key(self) -> str:
        """Snake_case name used by older backend revisions."""
        return _LEGACY_STAGE_KEYS[self]

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]

    @property
    def envelope_keys(self) -> tuple[str, ...]:
        """Response keys the stage payload may be nested under, in priority order."""
        if self is Stage.SUMMARY:
            return ("summary", "emotionSummary", "emotion_summary")
        return (self.value, self.legacy_key)

    @classmethod
    def from_wire(cls, name: str) -> Optional["Stage"]:
        """Resolve a stage from either its current or legacy wire name."""
        for stage in cls:
            if name in stage.envelope_keys:
                return stage
        return None


_LEGACY_STAGE_KEYS = {
    Stage.SUMMARY: "emotion_summary",
    Stage.BODY_LANGUAGE: "body_language",
    Stage.CONTEXTUAL_EMOTION: "contextual_emotion",
    Stage.OWNER_ADVICE: "owner_advice",
    Stage.CAT_JOKES: "cat_jokes",
}

_STAGE_LABELS = {
    Stage.SUMMARY: "Emotion summary",
    Stage.BODY_LANGUAGE: "Body language",
    Stage.CONTEXTUAL_EMOTION: "Contextual emotion",
    Stage.OWNER_ADVICE: "Owner advice",
    Stage.CAT_JOKES: "Cat jokes",
}

DETAIL_STAGES = (Stage.BODY_LANGUAGE, Stage.CONTEXTUAL_EMOTION, Stage.OWNER_ADVICE)

# Moods (lower-cased) for which the jokes stage is requested
JOKE_MOODS = frozenset({"content", "playful"})


class _StageResult(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    def to_context(self) -> dict:
        """JSON representation threaded into later stages as context."""
        return self.model_dump(mode="json", by_alias=True)


def _bullet_points(entries: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(entry.strip() for entry in entries if entry and entry.strip())


# --- Emotion Summary (summary) ---


class EmotionSummary(_StageResult):
    emotion: str
    intensity: str
    description: str
    emoji: str
    mood_type: str
    posture_hint: str = ""
    warning_message: Optional[str] = None

    @property
    def wants_jokes(self) -> bool:
        return self.mood_type.lower() in JOKE_MOODS


# --- Body Language (bodyLanguage) ---


class BodyLanguageAnalysis(_StageResult):
    posture: str
    ears: str
    tail: str
    eyes: str
    whiskers: str = ""  # absent from the earliest backend revision
    overall_mood: str


# --- Contextual Emotion (contextualEmotion) ---


class ContextualEmotion(_StageResult):
    context_clues: tuple[str, ...] = ()
    environmental_factors: tuple[str, ...] = ()
    emotional_meaning: tuple[str, ...] = ()


# --- Owner Advice (ownerAdvice) ---


class OwnerAdvice(_StageResult):
    immediate_actions: tuple[str, ...] = ()
    long_term_suggestions: tuple[str, ...] = ()
    warning_signs: tuple[str, ...] = ()

    @property
    def immediate_action_points(self) -> tuple[str, ...]:
        return _bullet_points(self.immediate_actions)

    @property
    def long_term_suggestion_points(self) -> tuple[str, ...]:
        return _bullet_points(self.long_term_suggestions)

    @property
    def warning_sign_points(self) -> tuple[str, ...]:
        return _bullet_points(self.warning_signs)


# --- Cat Jokes (catJokes) ---


class CatJokes(_StageResult):
    jokes: tuple[str, ...] = ()


STAGE_SCHEMAS: dict[Stage, type[_StageResult]] = {
    Stage.SUMMARY: EmotionSummary,
    Stage.BODY_LANGUAGE: BodyLanguageAnalysis,
    Stage.CONTEXTUAL_EMOTION: ContextualEmotion,
    Stage.OWNER_ADVICE: OwnerAdvice,
    Stage.CAT_JOKES: CatJokes,
}


# --- Upload / error envelopes ---


class UploadResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_uri: str
    mime_type: Optional[str] = None
    expires_at: Optional[str] = None


class ErrorEnvelope(BaseModel):
    error: Optional[str] = None
    message: Optional[str] = None

    def describe(self, stage_name: str) -> str:
        return self.message or self.error or f"{stage_name} server error"
