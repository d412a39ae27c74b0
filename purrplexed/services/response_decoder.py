"""
Decoding of raw backend responses into the typed stage results.

Backend payloads drifted over several revisions:
- a stage payload may be a single object or a one-element array
- keys may be camelCase (current) or snake_case (legacy)
- list fields may arrive as a string array or as one plain string

Every list field is resolved through an explicit, ordered strategy list so the
fallback order stays auditable:

    primary array -> legacy array -> primary string -> legacy string -> []
"""

import json
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError

from purrplexed.services.analysis_schemas import (
    STAGE_SCHEMAS,
    ErrorEnvelope,
    Stage,
    UploadResponse,
)
from purrplexed.services.exceptions import (
    InvalidResponseError,
    NetworkError,
    ServerError,
)


logger = logging.getLogger(__name__)

Reader = Callable[[Any], Optional[list[str]]]
Strategy = tuple[str, Reader]


def _as_string_array(value: Any) -> Optional[list[str]]:
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    return None


def _as_single_string(value: Any) -> Optional[list[str]]:
    if isinstance(value, str):
        return [value]
    return None


def string_list_strategies(*keys: str) -> tuple[Strategy, ...]:
    """
    Build the ordered strategy list for a string-list field.

    Array readers for every key come first (in key priority order), then the
    singular-string readers for the same keys.
    """
    arrays = tuple((key, _as_string_array) for key in keys)
    singles = tuple((key, _as_single_string) for key in keys)
    return arrays + singles


def resolve_string_list(payload: dict, strategies: tuple[Strategy, ...]) -> list[str]:
    """Return the first strategy hit, or an empty list when none applies."""
    for key, read in strategies:
        if key not in payload:
            continue
        value = read(payload[key])
        if value is not None:
            return value
    return []


def resolve_scalar(payload: dict, keys: tuple[str, ...]) -> Any:
    """Return the value under the first key that is present and not null."""
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


# Scalar fields: wire name -> keys in priority order
_SCALAR_FIELDS: dict[Stage, dict[str, tuple[str, ...]]] = {
    Stage.SUMMARY: {
        "emotion": ("emotion",),
        "intensity": ("intensity",),
        "description": ("description",),
        "emoji": ("emoji",),
        "moodType": ("moodType", "mood_type"),
        "postureHint": ("postureHint", "posture_hint"),
        "warningMessage": ("warningMessage", "warning_message"),
    },
    Stage.BODY_LANGUAGE: {
        "posture": ("posture",),
        "ears": ("ears",),
        "tail": ("tail",),
        "eyes": ("eyes",),
        "whiskers": ("whiskers",),
        "overallMood": ("overallMood", "overall_mood"),
    },
}

# List fields: wire name -> ordered strategies
_LIST_FIELDS: dict[Stage, dict[str, tuple[Strategy, ...]]] = {
    Stage.CONTEXTUAL_EMOTION: {
        "contextClues": string_list_strategies("contextClues", "context_clues"),
        "environmentalFactors": string_list_strategies(
            "environmentalFactors", "environmental_factors"
        ),
        "emotionalMeaning": string_list_strategies(
            "emotionalMeaning", "emotional_meaning"
        ),
    },
    Stage.OWNER_ADVICE: {
        "immediateActions": string_list_strategies(
            "immediateActions", "immediate_actions"
        ),
        "longTermSuggestions": string_list_strategies(
            "longTermSuggestions", "long_term_suggestions"
        ),
        "warningSigns": string_list_strategies("warningSigns", "warning_signs"),
    },
    Stage.CAT_JOKES: {
        "jokes": string_list_strategies("jokes"),
    },
}


def _load_json(body: bytes, what: str) -> Any:
    try:
        return json.loads(body)
    except ValueError as e:
        raise InvalidResponseError(f"Invalid {what} response format") from e


class ResponseDecoder:
    """Turns raw response bytes into typed stage results."""

    def decode_upload(self, body: bytes) -> UploadResponse:
        document = _load_json(body, "upload")
        if not isinstance(document, dict):
            raise InvalidResponseError("Invalid upload response format")
        try:
            return UploadResponse.model_validate(document)
        except ValidationError as e:
            raise InvalidResponseError("Invalid upload response format") from e

    def decode_stage(self, stage: Stage, body: bytes):
        """Decode a full ``/api/analyze`` response body for one stage."""
        document = _load_json(body, stage.value)
        payload = self.extract_payload(stage, document)
        return self.decode_payload(stage, payload)

    def extract_payload(self, stage: Stage, document: Any) -> Any:
        """Find the stage payload nested under its (current or legacy) key."""
        if isinstance(document, list):
            document = document[0] if document else None
        if isinstance(document, dict):
            for key in stage.envelope_keys:
                if document.get(key) is not None:
                    return document[key]
        raise InvalidResponseError(f"Missing {stage.value} in response")

    def decode_payload(self, stage: Stage, payload: Any):
        """Normalize and validate an already extracted stage payload."""
        if stage is Stage.CAT_JOKES and _as_string_array(payload) is not None:
            payload = {"jokes": payload}
        elif isinstance(payload, list):
            payload = payload[0] if payload else None

        if not isinstance(payload, dict):
            raise InvalidResponseError(f"Invalid {stage.value} payload")

        normalized = self._normalize(stage, payload)
        try:
            return STAGE_SCHEMAS[stage].model_validate(normalized)
        except ValidationError as e:
            logger.warning(
                "Stage payload failed validation (stage=%s): %s", stage.value, e
            )
            raise InvalidResponseError(f"Invalid {stage.value} payload") from e

    def _normalize(self, stage: Stage, payload: dict) -> dict:
        normalized = {}
        for field, keys in _SCALAR_FIELDS.get(stage, {}).items():
            value = resolve_scalar(payload, keys)
            if value is not None:
                normalized[field] = value
        for field, strategies in _LIST_FIELDS.get(stage, {}).items():
            normalized[field] = resolve_string_list(payload, strategies)
        return normalized

    # =========================================================================
    # ERROR ENVELOPES
    # =========================================================================

    def describe_error(self, body: bytes, stage_name: str) -> Optional[str]:
        """Message from an ``{error?, message?}`` envelope, or None if not one."""
        try:
            document = json.loads(body)
        except ValueError:
            return None
        if not isinstance(document, dict):
            return None
        try:
            envelope = ErrorEnvelope.model_validate(document)
        except ValidationError:
            return None
        return envelope.describe(stage_name)

    def raise_for_status(self, status_code: int, body: bytes, stage_name: str) -> None:
        """
        Raise the mapped error for a non-2xx response.

        Raises:
            ServerError: Body is an error envelope
            NetworkError: Body is not decodable
        """
        if 200 <= status_code < 300:
            return
        message = self.describe_error(body, stage_name)
        if message is not None:
            raise ServerError(message, status_code=status_code)
        raise NetworkError(f"{stage_name} server error (HTTP {status_code})")
