"""Thematica - purpose-adaptive theme extraction

Simple CLI for running an extraction over a JSON corpus.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from thematica.errors import ThemeExtractionError
from thematica.models.events import ProgressEvent
from thematica.models.themes import SourceContent
from thematica.services import logger as log_service  # noqa: F401  configures loguru sinks
from thematica.services.engine import EngineResources
from thematica.services.progress import ProgressReporter, new_run_id


def load_sources(path: Path) -> list[SourceContent]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("sources", [])
    return [SourceContent.from_dict(item) for item in payload]


def print_event(event: ProgressEvent) -> None:
    event_type = event.event.value
    data = event.details

    if event_type == "stage_started":
        print(f"\n[~] Stage {event.stage_index}/{event.total_stages}: {event.message}")
        print(f"    {event.rationale}")

    elif event_type == "item_progress":
        print(f"  [{event.percentage:5.1f}%] {event.message}")

    elif event_type == "stage_completed":
        print(f"  [+] {event.message} ({data.get('duration_ms', 0)}ms)")

    elif event_type == "source_failed":
        print(f"  [!] {event.message}: {data.get('error', '')}")

    elif event_type == "run_failed":
        print(f"\n[!] {event.message}")


async def run_extraction(args: argparse.Namespace) -> int:
    sources = load_sources(Path(args.sources))
    print(f"Sources: {len(sources)}  Purpose: {args.purpose}")
    print("-" * 50)

    engine = EngineResources()
    orchestrator = engine.orchestrator(embedding_backend=args.embedding_backend)
    reporter = ProgressReporter(new_run_id(), sink=print_event)

    try:
        result = await orchestrator.extract(
            sources,
            args.purpose,
            reporter=reporter,
            concurrency=args.concurrency,
        )
    except ThemeExtractionError as exc:
        print(f"\n[!] {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1

    stats = result.stats
    print(f"\n[*] Extraction Complete!")
    print(f"   Runtime: {stats.duration_ms}ms")
    print(f"   Sources: {stats.successful_sources}/{stats.total_sources} (failed: {stats.failed_sources})")
    print(f"   Codes: {stats.codes_generated}  Candidates: {stats.candidate_themes}  Final: {stats.final_themes}")
    print(f"   Cache hit rate: {stats.cache_hit_rate:.0%}")
    print(f"\n{'='*50}")
    print("THEMES:")
    print(f"{'='*50}")
    for i, theme in enumerate(result.themes, 1):
        print(f"{i:>3}. {theme.label}  (weight {theme.weight:.3f}, sources {theme.support_count})")
        if theme.keywords:
            print(f"     {', '.join(theme.keywords)}")
    for note in stats.notes:
        print(f"\n[i] {note}")

    if args.output:
        Path(args.output).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        print(f"\nWrote {args.output}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Thematica theme extraction")
    parser.add_argument("--sources", "-s", required=True, help="JSON file with a list of sources")
    parser.add_argument("--purpose", "-p", required=True, help="Research purpose, e.g. q_methodology")
    parser.add_argument("--embedding-backend", "-e", help="local, remote or hashing (default: from config)")
    parser.add_argument("--concurrency", "-c", type=int, help="Batch concurrency hint")
    parser.add_argument("--output", "-o", help="Write the full result as JSON")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_extraction(args)))


if __name__ == "__main__":
    main()
