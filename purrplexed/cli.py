"""CLI commands for Purrplexed."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from purrplexed.config import settings
from purrplexed.services.analysis_events import (
    BodyLanguageCompleted,
    CatJokesCompleted,
    ContextualEmotionCompleted,
    EmotionSummaryCompleted,
    Failed,
    OwnerAdviceCompleted,
    PartialFailures,
    UploadCompleted,
)
from purrplexed.services.analysis_schemas import CapturedPhoto
from purrplexed.services.analysis_session import AnalysisSession, AnalysisState
from purrplexed.services.exceptions import QuotaExceededError
from purrplexed.services.mock_transport import SCENARIOS, MockAnalysisTransport
from purrplexed.services.parallel_analysis_service import ParallelAnalysisService
from purrplexed.services.transport import HTTPAnalysisTransport
from purrplexed.services.usage_meter import UsageMeterService, build_usage_meter


def format_update(snapshot, update) -> str:
    """One human-readable line per update."""
    prefix = f"[{round(snapshot.progress * 100):3d}%]"
    if isinstance(update, UploadCompleted):
        return f"{prefix} Uploaded: {update.file_uri}"
    if isinstance(update, EmotionSummaryCompleted):
        result = update.result
        line = f"{prefix} {result.emoji} {result.emotion} ({result.intensity}): {result.description}"
        if result.warning_message:
            line += f"\n       Warning: {result.warning_message}"
        return line
    if isinstance(update, BodyLanguageCompleted):
        result = update.result
        return (
            f"{prefix} Body language: {result.overall_mood}"
            f" | ears: {result.ears} | tail: {result.tail} | eyes: {result.eyes}"
        )
    if isinstance(update, ContextualEmotionCompleted):
        clues = ", ".join(update.result.context_clues) or "none"
        return f"{prefix} Context clues: {clues}"
    if isinstance(update, OwnerAdviceCompleted):
        actions = "; ".join(update.result.immediate_action_points) or "none"
        return f"{prefix} Owner advice: {actions}"
    if isinstance(update, CatJokesCompleted):
        return "\n".join(f"{prefix} Joke: {joke}" for joke in update.result.jokes)
    if isinstance(update, PartialFailures):
        return "\n".join(f"{prefix} Skipped: {error}" for error in update.errors)
    if isinstance(update, Failed):
        return f"{prefix} Failed: {update.message}"
    return f"{prefix} {update.kind}"


async def analyze(
    image_path: str,
    mock: bool = False,
    mood: str = "content",
    as_json: bool = False,
) -> int:
    """Analyze one photo, printing every update. Returns the exit code."""
    try:
        image_data = Path(image_path).read_bytes()
    except OSError as e:
        print(f"Error: cannot read {image_path}: {e}")
        return 1

    if mock:
        transport = MockAnalysisTransport(mood=mood)
        # Demo runs never touch the persisted quota
        meter = UsageMeterService(settings.free_daily_limit)
    else:
        transport = HTTPAnalysisTransport()
        meter = build_usage_meter()

    session = AnalysisSession(ParallelAnalysisService(transport), meter)

    def print_update(snapshot, update):
        if as_json:
            print(json.dumps(update.to_wire(), ensure_ascii=False))
        else:
            print(format_update(snapshot, update))

    try:
        snapshot = await session.run(CapturedPhoto(image_data), on_update=print_update)
    except QuotaExceededError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await transport.aclose()

    return 0 if snapshot.state is AnalysisState.READY else 1


def usage() -> int:
    meter = build_usage_meter()
    if meter.daily_limit is None:
        print("Premium: unlimited analyses")
    else:
        print(
            f"Free analyses left today: {meter.remaining_free_count()}"
            f" of {meter.daily_limit}"
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Purrplexed CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # analyze command
    analyze_parser = subparsers.add_parser("analyze", help="Analyze a cat photo")
    analyze_parser.add_argument("image", help="Path to the photo")
    analyze_parser.add_argument(
        "--mock", action="store_true", help="Use canned responses instead of the backend"
    )
    analyze_parser.add_argument(
        "--mood",
        choices=sorted(SCENARIOS),
        default="content",
        help="Canned scenario for --mock",
    )
    analyze_parser.add_argument(
        "--json", action="store_true", help="Print updates as JSON lines"
    )
    analyze_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )

    # usage command
    subparsers.add_parser("usage", help="Show remaining free analyses")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "analyze":
        return asyncio.run(analyze(args.image, args.mock, args.mood, args.json))
    elif args.command == "usage":
        return usage()
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
