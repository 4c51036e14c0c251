"""Entry point for `python -m casegen_engine` and the `casegen` CLI script."""

from __future__ import annotations

import argparse
import logging

from casegen_engine.difficulty import PROFILES
from casegen_engine.llm import OpenAIGateway
from casegen_engine.models import GenerationRequest
from casegen_engine.orchestrator import CaseGenerationOrchestrator
from casegen_engine.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate an investigative case bundle")
    parser.add_argument("--case-id", default=None, help="Case id; reusing an id resumes that case from its checkpoint")
    parser.add_argument(
        "--difficulty",
        default=None,
        help=f"Difficulty level ({', '.join(PROFILES)}); unknown or omitted picks one at random",
    )
    parser.add_argument("--timezone", default="UTC", help="IANA timezone for every timestamp in the bundle")
    parser.add_argument(
        "--constraint",
        action="append",
        default=[],
        help="Free-text constraint passed to the planner (repeatable)",
    )
    parser.add_argument("--no-images", action="store_true", help="Skip image rendering")
    parser.add_argument("--no-render", action="store_true", help="Skip document file rendering")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        request = GenerationRequest(
            difficulty=args.difficulty,
            timezone=args.timezone,
            generate_images=not args.no_images,
            render_files=not args.no_render,
            constraints=args.constraint,
        )
        gateway = OpenAIGateway(model_name=settings.model_content, timeout=settings.call_timeout_seconds)
        analysis_gateway = OpenAIGateway(model_name=settings.model_analysis, timeout=settings.call_timeout_seconds)
    except (RuntimeError, ValueError) as exc:
        logging.error("Unable to configure case generation: %s", exc)
        return 1

    with CaseGenerationOrchestrator(gateway, settings=settings, analysis_gateway=analysis_gateway) as orchestrator:
        try:
            result = orchestrator.run(request, case_id=args.case_id)
        except Exception as exc:  # noqa: BLE001
            logging.exception("Case generation failed: %s", exc)
            return 1

    print(result.status.model_dump_json(indent=2))
    if result.manifest is not None:
        print(f"manifest_entries={len(result.manifest.entries)}")
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
