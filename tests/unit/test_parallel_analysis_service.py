"""
Unit tests for ParallelAnalysisService.

The orchestrator runs against MockAnalysisTransport (or the gated variant
for ordering and cancellation), so every test is deterministic and
offline.
"""

import asyncio
import json

import pytest

from purrplexed.services.analysis_events import update_adapter
from purrplexed.services.analysis_schemas import CapturedPhoto, Stage
from purrplexed.services.exceptions import NetworkError, ServerError
from purrplexed.services.mock_transport import MockAnalysisTransport
from purrplexed.services.parallel_analysis_service import (
    GENERIC_FAILURE_MESSAGE,
    ParallelAnalysisService,
)
from tests.factories import make_photo, sse_line, summary_payload
from tests.fixtures.mocks import (
    GatedTransport,
    create_mock_for_stream,
    create_mock_with_error,
)


FULL_UPLOAD_RUN = [
    "started",
    "uploadStarted",
    "uploadCompleted",
    "emotionSummaryCompleted",
    "bodyLanguageCompleted",
    "contextualEmotionCompleted",
    "ownerAdviceCompleted",
    "catJokesCompleted",
]


async def collect(stream) -> list:
    return [update async for update in stream]


def kinds(updates) -> list[str]:
    return [update.kind for update in updates]


@pytest.fixture
def photo():
    return make_photo()


def make_service(transport, contract="upload", concurrency="sequential"):
    return ParallelAnalysisService(
        transport, backend_contract=contract, detail_concurrency=concurrency
    )


# =============================================================================
# Upload Contract
# =============================================================================


class TestUploadContract:
    @pytest.mark.asyncio
    async def test_full_run_event_order(self, service, photo):
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates) == FULL_UPLOAD_RUN
        assert updates[2].file_uri.endswith("mock-cat.jpg")

    @pytest.mark.asyncio
    async def test_upload_is_multipart_jpeg(self, service, mock_transport, photo):
        await collect(service.analyze_parallel(photo))
        upload = mock_transport.calls[0]
        assert upload["kind"] == "multipart"
        assert upload["path"] == "/api/upload"
        assert upload["file_field"] == "file"
        assert upload["filename"] == "cat_image.jpg"
        assert upload["mime_type"] == "image/jpeg"
        assert upload["file_size"] == len(photo.image_data)

    @pytest.mark.asyncio
    async def test_stage_requests_reference_uploaded_file(self, service, mock_transport, photo):
        await collect(service.analyze_parallel(photo))
        json_calls = [call for call in mock_transport.calls if call["kind"] == "json"]
        assert all(call["body"]["fileUri"].endswith("mock-cat.jpg") for call in json_calls)
        assert all("images" not in call["body"] for call in json_calls)

    @pytest.mark.asyncio
    async def test_context_accumulates_in_stage_order(self, service, mock_transport, photo):
        await collect(service.analyze_parallel(photo))
        bodies = {
            call["body"]["analysisType"]: call["body"]
            for call in mock_transport.calls
            if call["kind"] == "json"
        }
        assert "context" not in bodies["summary"]
        assert list(bodies["bodyLanguage"]["context"]) == ["summary"]
        assert list(bodies["contextualEmotion"]["context"]) == ["summary", "bodyLanguage"]
        assert list(bodies["ownerAdvice"]["context"]) == [
            "summary",
            "bodyLanguage",
            "contextualEmotion",
        ]
        assert list(bodies["catJokes"]["context"]) == [
            "summary",
            "bodyLanguage",
            "contextualEmotion",
            "ownerAdvice",
        ]
        assert bodies["bodyLanguage"]["context"]["summary"]["moodType"] == "content"
        # Bodies must be serializable as sent
        json.dumps(bodies["catJokes"])

    @pytest.mark.asyncio
    async def test_stressed_mood_skips_jokes(self, photo):
        transport = MockAnalysisTransport(mood="stressed")
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert "catJokesCompleted" not in kinds(updates)
        assert "catJokes" not in transport.requested_stages()
        assert updates[-1].kind == "ownerAdviceCompleted"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mood,requested", [("Playful", True), ("Alert", False)])
    async def test_jokes_depend_on_mood(self, photo, mood, requested):
        transport = MockAnalysisTransport()
        transport.set_stage_payload(Stage.SUMMARY, summary_payload(mood_type=mood))
        await collect(make_service(transport).analyze_parallel(photo))
        assert ("catJokes" in transport.requested_stages()) is requested

    @pytest.mark.asyncio
    async def test_upload_failure_fails_run(self, photo):
        transport = MockAnalysisTransport()
        transport.set_upload_error(NetworkError("connection reset"))
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert kinds(updates) == ["started", "uploadStarted", "failed"]
        assert updates[-1].message == GENERIC_FAILURE_MESSAGE
        assert transport.requested_stages() == []

    @pytest.mark.asyncio
    async def test_upload_error_envelope_fails_run(self, photo):
        transport = MockAnalysisTransport()
        transport.set_upload_response({"error": "File too large"}, status_code=413)
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert kinds(updates)[-1] == "failed"

    @pytest.mark.asyncio
    async def test_summary_failure_fails_run(self, photo):
        transport = create_mock_with_error(Stage.SUMMARY, ServerError("Model overloaded"))
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert kinds(updates) == ["started", "uploadStarted", "uploadCompleted", "failed"]
        assert transport.requested_stages() == ["summary"]

    @pytest.mark.asyncio
    async def test_missing_summary_payload_fails_run(self, photo):
        transport = MockAnalysisTransport()
        transport.set_stage_response(Stage.SUMMARY, {"bodyLanguage": {}})
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert kinds(updates)[-1] == "failed"
        assert kinds(updates).count("failed") == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_run(self, photo):
        transport = MockAnalysisTransport()
        transport.set_stage_error(Stage.SUMMARY, RuntimeError("boom"))
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert kinds(updates)[-1] == "failed"
        assert updates[-1].message == GENERIC_FAILURE_MESSAGE


# =============================================================================
# Partial Failures
# =============================================================================


class TestPartialFailures:
    @pytest.mark.asyncio
    async def test_single_detail_failure(self, photo):
        transport = MockAnalysisTransport()
        transport.set_stage_error(Stage.CONTEXTUAL_EMOTION, ServerError("Model overloaded"))
        updates = await collect(make_service(transport).analyze_parallel(photo))

        assert kinds(updates) == [
            "started",
            "uploadStarted",
            "uploadCompleted",
            "emotionSummaryCompleted",
            "bodyLanguageCompleted",
            "ownerAdviceCompleted",
            "catJokesCompleted",
            "partialFailures",
        ]
        assert updates[-1].errors == ("Contextual emotion analysis failed: Model overloaded",)

    @pytest.mark.asyncio
    async def test_failed_stage_is_left_out_of_context(self, photo):
        transport = MockAnalysisTransport()
        transport.set_stage_error(Stage.BODY_LANGUAGE, NetworkError("timeout"))
        await collect(make_service(transport).analyze_parallel(photo))
        owner_call = [
            call for call in transport.calls
            if call["kind"] == "json" and call["body"]["analysisType"] == "ownerAdvice"
        ][0]
        assert list(owner_call["body"]["context"]) == ["summary", "contextualEmotion"]

    @pytest.mark.asyncio
    async def test_all_optional_stages_fail(self, photo):
        transport = MockAnalysisTransport()
        for stage in (
            Stage.BODY_LANGUAGE,
            Stage.CONTEXTUAL_EMOTION,
            Stage.OWNER_ADVICE,
            Stage.CAT_JOKES,
        ):
            transport.set_stage_response(stage, {"error": "nope"}, status_code=500)
        updates = await collect(make_service(transport).analyze_parallel(photo))

        assert kinds(updates) == [
            "started",
            "uploadStarted",
            "uploadCompleted",
            "emotionSummaryCompleted",
            "partialFailures",
        ]
        assert updates[-1].errors == (
            "Body language analysis failed: nope",
            "Contextual emotion analysis failed: nope",
            "Owner advice analysis failed: nope",
            "Cat jokes analysis failed: nope",
        )
        assert "failed" not in kinds(updates)

    @pytest.mark.asyncio
    async def test_invalid_detail_payload_is_partial(self, photo):
        transport = MockAnalysisTransport()
        transport.set_stage_response(Stage.BODY_LANGUAGE, {"bodyLanguage": "garbled"})
        updates = await collect(make_service(transport).analyze_parallel(photo))
        assert updates[-1].kind == "partialFailures"
        assert updates[-1].errors[0].startswith("Body language analysis failed")


# =============================================================================
# Inline Contract
# =============================================================================


class TestInlineContract:
    @pytest.mark.asyncio
    async def test_no_upload_events(self, photo):
        transport = MockAnalysisTransport()
        updates = await collect(make_service(transport, contract="inline").analyze_parallel(photo))
        assert kinds(updates) == [kind for kind in FULL_UPLOAD_RUN if "upload" not in kind]
        assert all(call["kind"] == "json" for call in transport.calls)

    @pytest.mark.asyncio
    async def test_image_sent_as_data_url(self, photo):
        transport = MockAnalysisTransport()
        await collect(make_service(transport, contract="inline").analyze_parallel(photo))
        body = transport.calls[0]["body"]
        assert body["analysisType"] == "summary"
        assert len(body["images"]) == 1
        assert body["images"][0].startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_unreadable_image_fails_run(self):
        transport = MockAnalysisTransport()
        service = make_service(transport, contract="inline")
        updates = await collect(service.analyze_parallel(CapturedPhoto(b"not an image")))
        assert kinds(updates) == ["started", "failed"]
        assert transport.calls == []


# =============================================================================
# Concurrent Detail Stages
# =============================================================================


class TestConcurrentDetails:
    @pytest.mark.asyncio
    async def test_results_emitted_in_stage_order(self, photo):
        transport = GatedTransport()
        transport.hold(Stage.BODY_LANGUAGE)
        stream = make_service(transport, concurrency="concurrent").analyze_parallel(photo)
        updates = []

        async def consume():
            async for update in stream:
                updates.append(update)

        task = asyncio.create_task(consume())
        await asyncio.wait_for(transport.entered[Stage.BODY_LANGUAGE].wait(), 1)
        for _ in range(100):
            if len(transport.completion_order) == 4:
                break
            await asyncio.sleep(0.01)

        # Later stages finished first but wait behind body language
        assert transport.completion_order[0] is Stage.SUMMARY
        assert Stage.BODY_LANGUAGE not in transport.completion_order
        assert kinds(updates)[-1] == "emotionSummaryCompleted"

        transport.release(Stage.BODY_LANGUAGE)
        await asyncio.wait_for(task, 1)
        assert kinds(updates) == FULL_UPLOAD_RUN

    @pytest.mark.asyncio
    async def test_detail_stages_get_summary_context_only(self, photo):
        transport = MockAnalysisTransport()
        await collect(make_service(transport, concurrency="concurrent").analyze_parallel(photo))
        for call in transport.calls:
            if call["kind"] == "json" and call["body"]["analysisType"] != "summary":
                assert list(call["body"]["context"]) == ["summary"]

    @pytest.mark.asyncio
    async def test_partial_failures_keep_stage_order(self, photo):
        transport = MockAnalysisTransport()
        transport.set_stage_error(Stage.OWNER_ADVICE, NetworkError("timeout"))
        transport.set_stage_error(Stage.BODY_LANGUAGE, NetworkError("reset"))
        transport.set_stage_delay(Stage.BODY_LANGUAGE, 0.05)
        updates = await collect(
            make_service(transport, concurrency="concurrent").analyze_parallel(photo)
        )
        assert updates[-1].errors == (
            "Body language analysis failed: reset",
            "Owner advice analysis failed: timeout",
        )


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_summary_stops_stream(self, photo):
        transport = GatedTransport()
        transport.hold(Stage.BODY_LANGUAGE)
        stream = make_service(transport).analyze_parallel(photo)
        updates = []

        async for update in stream:
            updates.append(update)
            if update.kind == "emotionSummaryCompleted":
                await asyncio.wait_for(transport.entered[Stage.BODY_LANGUAGE].wait(), 1)
                stream.cancel()

        await stream.aclose()
        assert kinds(updates) == FULL_UPLOAD_RUN[:4]
        assert transport.aborted == [Stage.BODY_LANGUAGE]
        assert transport.requested_stages() == ["summary"]

    @pytest.mark.asyncio
    async def test_cancel_before_start_issues_no_calls(self, photo):
        transport = MockAnalysisTransport()
        stream = make_service(transport).analyze_parallel(photo)
        stream.cancel()
        assert await collect(stream) == []
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_context_manager_cancels_unfinished_run(self, photo):
        transport = GatedTransport()
        transport.hold(Stage.SUMMARY)
        async with make_service(transport).analyze_parallel(photo) as stream:
            first = await stream.__anext__()
            assert first.kind == "started"
            await asyncio.wait_for(transport.entered[Stage.SUMMARY].wait(), 1)
        assert stream.cancelled
        assert transport.aborted == [Stage.SUMMARY]

    @pytest.mark.asyncio
    async def test_dropped_stream_cancels_run(self, photo):
        transport = GatedTransport()
        transport.hold(Stage.SUMMARY)
        stream = make_service(transport).analyze_parallel(photo)

        async for update in stream:
            if update.kind == "uploadCompleted":
                break
        await asyncio.wait_for(transport.entered[Stage.SUMMARY].wait(), 1)
        del stream

        for _ in range(10):
            await asyncio.sleep(0)
        assert transport.aborted == [Stage.SUMMARY]

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, service, photo):
        stream = service.analyze_parallel(photo)
        updates = await collect(stream)
        stream.cancel()
        stream.cancel()
        await stream.aclose()
        assert kinds(updates) == FULL_UPLOAD_RUN


# =============================================================================
# Streamed Contract
# =============================================================================


class TestStreamedContract:
    @pytest.mark.asyncio
    async def test_full_stream(self, photo):
        transport = MockAnalysisTransport()
        updates = await collect(make_service(transport, contract="stream").analyze_parallel(photo))
        assert kinds(updates) == [kind for kind in FULL_UPLOAD_RUN if "upload" not in kind]

        call = transport.calls[0]
        assert call["kind"] == "stream"
        assert call["body"]["stream"] is True
        assert call["body"]["images"][0].startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_out_of_order_events_are_reordered(self, photo):
        lines = [
            sse_line("ownerAdvice", {"immediateActions": ["Pet gently"]}),
            sse_line("cat_jokes", {"jokes": ["Meow-velous"]}),
            sse_line("summary", summary_payload(mood_type="playful")),
            sse_line("contextualEmotion", {"contextClues": "Toy mouse"}),
            sse_line(
                "body_language",
                {"posture": "p", "ears": "e", "tail": "t", "eyes": "y", "overall_mood": "m"},
            ),
            sse_line("complete", {}),
        ]
        service = make_service(create_mock_for_stream(lines), contract="stream")
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates) == [
            "started",
            "emotionSummaryCompleted",
            "bodyLanguageCompleted",
            "contextualEmotionCompleted",
            "ownerAdviceCompleted",
            "catJokesCompleted",
        ]
        assert updates[3].result.context_clues == ("Toy mouse",)

    @pytest.mark.asyncio
    async def test_stage_error_event_is_partial(self, photo):
        lines = [
            sse_line("summary", summary_payload(mood_type="grumpy")),
            sse_line("error", {"stage": "bodyLanguage", "message": "Vision timeout"}),
            sse_line("contextualEmotion", {"contextClues": ["Vet carrier"]}),
            sse_line("ownerAdvice", {"warningSigns": ["Hiding"]}),
            sse_line("complete", {}),
        ]
        service = make_service(create_mock_for_stream(lines), contract="stream")
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates) == [
            "started",
            "emotionSummaryCompleted",
            "contextualEmotionCompleted",
            "ownerAdviceCompleted",
            "partialFailures",
        ]
        assert updates[-1].errors == ("Body language analysis failed: Vision timeout",)

    @pytest.mark.asyncio
    async def test_stage_error_before_summary_is_partial(self, photo):
        lines = [
            sse_line("error", {"stage": "bodyLanguage", "message": "Vision timeout"}),
            sse_line("summary", summary_payload(mood_type="alert")),
            sse_line("contextualEmotion", {"contextClues": ["Open window"]}),
            sse_line("ownerAdvice", {"immediateActions": ["Close the window"]}),
            sse_line("complete", {}),
        ]
        service = make_service(create_mock_for_stream(lines), contract="stream")
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates) == [
            "started",
            "emotionSummaryCompleted",
            "contextualEmotionCompleted",
            "ownerAdviceCompleted",
            "partialFailures",
        ]
        assert updates[-1].errors == ("Body language analysis failed: Vision timeout",)

    @pytest.mark.asyncio
    async def test_error_before_summary_fails_run(self, photo):
        lines = [sse_line("error", {"error": "Model unavailable"})]
        service = make_service(create_mock_for_stream(lines), contract="stream")
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates) == ["started", "failed"]

    @pytest.mark.asyncio
    async def test_truncated_stream_reports_missing_stages(self, photo):
        lines = [
            sse_line("summary", summary_payload(mood_type="content")),
            sse_line("bodyLanguage", {"posture": "p", "ears": "e", "tail": "t", "eyes": "y", "overallMood": "m"}),
        ]
        service = make_service(create_mock_for_stream(lines), contract="stream")
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates)[-1] == "partialFailures"
        assert updates[-1].errors == (
            "Contextual emotion analysis failed: no result received",
            "Owner advice analysis failed: no result received",
            "Cat jokes analysis failed: no result received",
        )

    @pytest.mark.asyncio
    async def test_stream_without_summary_fails(self, photo):
        lines = [sse_line("complete", {})]
        service = make_service(create_mock_for_stream(lines), contract="stream")
        updates = await collect(service.analyze_parallel(photo))
        assert kinds(updates) == ["started", "failed"]

    @pytest.mark.asyncio
    async def test_noise_lines_are_ignored(self, photo):
        transport = MockAnalysisTransport(mood="stressed")
        lines = [": keep-alive", "event: message", "data: not json"]
        transport.set_stream_lines(lines + transport.default_stream_lines())
        updates = await collect(make_service(transport, contract="stream").analyze_parallel(photo))
        assert kinds(updates) == [
            "started",
            "emotionSummaryCompleted",
            "bodyLanguageCompleted",
            "contextualEmotionCompleted",
            "ownerAdviceCompleted",
        ]


# =============================================================================
# Event Wire Format
# =============================================================================


class TestEventWireFormat:
    @pytest.mark.asyncio
    async def test_stage_payloads_use_wire_names(self, service, photo):
        updates = await collect(service.analyze_parallel(photo))
        summary = updates[3].to_wire()
        assert summary["event"] == "emotionSummaryCompleted"
        assert summary["payload"]["moodType"] == "content"
        assert updates[2].to_wire() == {
            "event": "uploadCompleted",
            "payload": {"fileUri": updates[2].file_uri},
        }

    def test_union_parses_by_kind(self):
        update = update_adapter.validate_python(
            {"kind": "partialFailures", "errors": ["Cat jokes analysis failed: x"]}
        )
        assert update.kind == "partialFailures"
        assert update.errors == ("Cat jokes analysis failed: x",)
        assert update.to_wire()["payload"] == {"errors": ["Cat jokes analysis failed: x"]}
