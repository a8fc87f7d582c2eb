"""
Command-line entry point.

Usage:
    renalscan analyze scan.png                   # Analyse one image
    renalscan analyze scan.png --policy holistic # Use the holistic decision rules
    renalscan analyze scan.png --json            # Print the result as JSON
    renalscan analyze https://host/scan.png      # Fetch and analyse a remote image
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from renalscan.agent.orchestrator import Orchestrator
from renalscan.config import get_settings
from renalscan.models.result import Fail
from renalscan.models.schemas import AnalysisStep, AnalysisStepStatus, DecisionPolicy, ImageReference

logger = logging.getLogger(__name__)


def _print_step(step: AnalysisStep) -> None:
    if step.status == AnalysisStepStatus.RUNNING:
        return
    detail = step.error or step.output_summary or ""
    print(f"  {step.step_id:17s} {step.status.value:10s} ({step.duration_ms}ms) {detail[:100]}", file=sys.stderr)


def _load_image(source: str) -> ImageReference:
    if source.startswith(("http://", "https://", "data:")):
        return ImageReference(uri=source)
    path = Path(source)
    mime_type, _ = mimetypes.guess_type(path.name)
    return ImageReference.from_bytes(path.read_bytes(), mime_type or "")


async def _analyze(args: argparse.Namespace) -> int:
    overrides = {}
    if args.policy:
        overrides["decision_policy"] = DecisionPolicy(args.policy)
    if args.threshold is not None:
        overrides["low_confidence_threshold"] = args.threshold
    settings = get_settings().model_copy(update=overrides)

    try:
        image = _load_image(args.image)
    except (OSError, ValueError) as e:
        print(f"Cannot read image: {e}", file=sys.stderr)
        return 2

    orchestrator = Orchestrator.from_settings(settings)
    outcome = await orchestrator.analyze(image, on_step=None if args.quiet else _print_step)

    if isinstance(outcome, Fail):
        logger.error(f"Analysis failed at {outcome.error.stage} ({outcome.error.kind.value}): {outcome.error.message}")
        print(outcome.error.user_message, file=sys.stderr)
        return 1

    result = outcome.value
    if args.json:
        print(result.model_dump_json(indent=2))
        return 0

    confidence = "n/a" if result.confidence is None else f"{result.confidence:.0%}"
    print(f"Diagnosis : {result.diagnosis.value}")
    print(f"Confidence: {confidence}{' (refined)' if result.refined else ''}")
    print(f"\n{result.explanation}")
    if result.highlighted_areas:
        print(f"\nAreas of concern: {result.highlighted_areas}")
    if result.analytics:
        print(f"\nAnalytics: {result.analytics}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="renalscan", description="Kidney CT scan analysis")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Analyse one image")
    analyze.add_argument("image", help="Path, http(s) URL or data URI of the image")
    analyze.add_argument("--policy", choices=[p.value for p in DecisionPolicy], help="Decision rule variant")
    analyze.add_argument("--threshold", type=float, help="Low-confidence threshold (0-1)")
    analyze.add_argument("--json", action="store_true", help="Print the result as JSON")
    analyze.add_argument("--quiet", action="store_true", help="Do not print step progress")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if args.threshold is not None and not 0.0 <= args.threshold <= 1.0:
        parser.error("--threshold must be between 0 and 1")

    return asyncio.run(_analyze(args))


if __name__ == "__main__":
    sys.exit(main())
