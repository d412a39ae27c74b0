"""
In-process transport that answers with canned analysis payloads.

Used by ``purrplexed analyze --mock`` for offline demos and by the tests.
It records every call and lets callers override any stage's response, inject
errors, or slow a stage down.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from purrplexed.services.analysis_schemas import DETAIL_STAGES, JOKE_MOODS, Stage
from purrplexed.services.transport import AnalysisTransport, TransportResponse


logger = logging.getLogger(__name__)

MOCK_FILE_URI = "https://files.purrplexed.test/uploads/mock-cat.jpg"

# Canned scenarios keyed by mood type
SCENARIOS: dict[str, dict[Stage, dict]] = {
    "content": {
        Stage.SUMMARY: {
            "emotion": "Content",
            "intensity": "moderate",
            "description": "Relaxed and comfortable in a familiar spot.",
            "emoji": "😌",
            "moodType": "content",
            "postureHint": "Loaf position with paws tucked",
        },
        Stage.BODY_LANGUAGE: {
            "posture": "Loaf, weight settled",
            "ears": "Upright, facing forward",
            "tail": "Wrapped around the body",
            "eyes": "Half-closed, slow blinking",
            "whiskers": "Relaxed, pointing sideways",
            "overallMood": "Calm and at ease",
        },
        Stage.CONTEXTUAL_EMOTION: {
            "contextClues": ["Sunny windowsill", "Soft blanket underneath"],
            "environmentalFactors": ["Quiet room", "Warm light"],
            "emotionalMeaning": ["Feels safe in this territory"],
        },
        Stage.OWNER_ADVICE: {
            "immediateActions": ["Let the cat keep resting"],
            "longTermSuggestions": ["Keep a warm resting spot available"],
            "warningSigns": [],
        },
        Stage.CAT_JOKES: {
            "jokes": [
                "This loaf has reached peak proofing.",
                "Do not disturb: nap in progress since 9am.",
            ],
        },
    },
    "stressed": {
        Stage.SUMMARY: {
            "emotion": "Anxious",
            "intensity": "high",
            "description": "Alert and tense, possibly startled by something nearby.",
            "emoji": "🙀",
            "moodType": "stressed",
            "postureHint": "Crouched low, ready to move",
            "warningMessage": "Give your cat space until it settles.",
        },
        Stage.BODY_LANGUAGE: {
            "posture": "Crouched, weight on hind legs",
            "ears": "Flattened sideways",
            "tail": "Tucked under the body",
            "eyes": "Wide with dilated pupils",
            "whiskers": "Pulled back against the face",
            "overallMood": "Fearful",
        },
        Stage.CONTEXTUAL_EMOTION: {
            "contextClues": ["Hiding under furniture"],
            "environmentalFactors": ["Unfamiliar visitor", "Loud noise"],
            "emotionalMeaning": ["Wants to avoid a perceived threat"],
        },
        Stage.OWNER_ADVICE: {
            "immediateActions": ["Lower noise levels", "Do not reach for the cat"],
            "longTermSuggestions": ["Provide elevated hiding spots"],
            "warningSigns": ["Hiding for more than a day", "Refusing food"],
        },
        Stage.CAT_JOKES: {"jokes": []},
    },
}


def stage_body(stage: Stage, payload) -> bytes:
    """Full ``/api/analyze`` response body wrapping one stage payload."""
    return json.dumps({stage.value: payload}).encode()


class MockAnalysisTransport(AnalysisTransport):
    """AnalysisTransport that never touches the network."""

    def __init__(self, mood: str = "content", latency: float = 0.0):
        if mood not in SCENARIOS:
            raise ValueError(f"Unknown mock scenario: {mood}")
        self.mood = mood
        self.latency = latency
        self.calls: list[dict] = []
        self.closed = False

        self._payloads = dict(SCENARIOS[mood])
        self._responses: dict[Stage, TransportResponse] = {}
        self._errors: dict[Stage, Exception] = {}
        self._delays: dict[Stage, float] = {}
        self._upload_response: Optional[TransportResponse] = None
        self._upload_error: Optional[Exception] = None
        self._stream_lines: Optional[list[str]] = None

    # -- configuration --------------------------------------------------------

    def set_stage_payload(self, stage: Stage, payload) -> None:
        """Replace the canned payload (the part nested under the stage key)."""
        self._payloads[stage] = payload

    def set_stage_response(self, stage: Stage, body, status_code: int = 200) -> None:
        """Answer a stage with a raw body (bytes, or anything JSON-serializable)."""
        if not isinstance(body, bytes):
            body = json.dumps(body).encode()
        self._responses[stage] = TransportResponse(status_code, body)

    def set_stage_error(self, stage: Stage, error: Exception) -> None:
        self._errors[stage] = error

    def set_stage_delay(self, stage: Stage, seconds: float) -> None:
        self._delays[stage] = seconds

    def set_upload_response(self, body, status_code: int = 200) -> None:
        if not isinstance(body, bytes):
            body = json.dumps(body).encode()
        self._upload_response = TransportResponse(status_code, body)

    def set_upload_error(self, error: Exception) -> None:
        self._upload_error = error

    def set_stream_lines(self, lines: list[str]) -> None:
        self._stream_lines = list(lines)

    # -- inspection -----------------------------------------------------------

    def requested_stages(self) -> list[str]:
        return [
            call["body"]["analysisType"]
            for call in self.calls
            if call["kind"] == "json" and "analysisType" in call["body"]
        ]

    # -- AnalysisTransport ----------------------------------------------------

    async def _pause(self, stage: Optional[Stage] = None) -> None:
        delay = self._delays.get(stage, self.latency) if stage else self.latency
        if delay:
            await asyncio.sleep(delay)

    async def post_json(
        self, path: str, body: dict, headers: Optional[dict] = None
    ) -> TransportResponse:
        self.calls.append({"kind": "json", "path": path, "body": body})
        stage = Stage.from_wire(body.get("analysisType", ""))
        if stage is None:
            return TransportResponse(400, b'{"error": "Unknown analysisType"}')

        await self._pause(stage)
        if stage in self._errors:
            raise self._errors[stage]
        if stage in self._responses:
            return self._responses[stage]
        logger.debug("Mock answering stage=%s", stage.value)
        return TransportResponse(200, stage_body(stage, self._payloads[stage]))

    async def post_multipart(
        self,
        path: str,
        fields: dict,
        file_field: str,
        file_bytes: bytes,
        filename: str,
        mime_type: str,
    ) -> TransportResponse:
        self.calls.append(
            {
                "kind": "multipart",
                "path": path,
                "fields": fields,
                "file_field": file_field,
                "file_size": len(file_bytes),
                "filename": filename,
                "mime_type": mime_type,
            }
        )
        await self._pause()
        if self._upload_error is not None:
            raise self._upload_error
        if self._upload_response is not None:
            return self._upload_response
        body = {"fileUri": MOCK_FILE_URI, "mimeType": mime_type}
        return TransportResponse(200, json.dumps(body).encode())

    def default_stream_lines(self) -> list[str]:
        """Event-stream lines reporting every stage of the canned scenario."""
        stages = [Stage.SUMMARY, *DETAIL_STAGES]
        if self.mood in JOKE_MOODS:
            stages.append(Stage.CAT_JOKES)
        lines = []
        for stage in stages:
            message = {"event": stage.value, "payload": self._payloads[stage]}
            lines.extend([f"data: {json.dumps(message)}", ""])
        lines.extend(['data: {"event": "complete", "payload": {}}', ""])
        return lines

    async def stream_lines(
        self, path: str, body: dict, headers: Optional[dict] = None
    ) -> AsyncIterator[str]:
        self.calls.append({"kind": "stream", "path": path, "body": body})
        lines = self._stream_lines
        if lines is None:
            lines = self.default_stream_lines()
        for line in lines:
            await self._pause()
            yield line

    async def aclose(self) -> None:
        self.closed = True
