"""Parse a transcript locally, or run an analysis through a CallScope server.

Usage:
    python scripts/analyze_call.py parse path/to/2025-01-02_Acme-1463.txt [--prompt]
    python scripts/analyze_call.py calls --user-id u1 --email jane@example.com [--from 2025-01-01] [--to 2025-01-31]
    python scripts/analyze_call.py analyze <call_id> --user-id u1 --email jane@example.com [--server http://localhost:8000]
"""

import sys
import json
import asyncio
import argparse
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from loguru import logger

from config import settings
from pipeline.poller import PollOutcome, poll_analysis
from services.api.client import CallScopeClient
from services.errors import AppError
from services.transcript.parser import format_transcript_for_analysis, hash_transcript, parse_transcript


def cmd_parse(args) -> int:
    path = Path(args.file)
    if not path.is_file():
        logger.error(f"File not found: {path}")
        return 1

    raw = path.read_text(encoding="utf-8", errors="replace")
    parsed = parse_transcript(raw, path.name)

    if args.prompt:
        print(format_transcript_for_analysis(parsed))
    else:
        out = parsed.model_dump()
        out["transcript_hash"] = hash_transcript(raw)
        print(json.dumps(out, indent=2, ensure_ascii=False))

    logger.info(f"{path.name}: {len(parsed.participants)} participants, {len(parsed.turns)} turns")
    return 0


async def cmd_calls(args) -> int:
    async with CallScopeClient(args.server, args.user_id, args.email) as client:
        calls = await client.list_calls(args.date_from, args.date_to)
    for c in calls:
        mark = "*" if c.has_analysis else " "
        print(f"{mark} {c.id}  {c.call_date}  {c.title}  {c.call_type or ''}")
    logger.info(f"{len(calls)} calls")
    return 0


async def cmd_analyze(args) -> int:
    async with CallScopeClient(args.server, args.user_id, args.email) as client:
        analysis_id = await client.trigger_analysis(args.call_id)
        logger.info(f"Triggered {analysis_id}, polling every {args.interval}s")

        result = await poll_analysis(
            lambda: client.get_job_status(analysis_id),
            interval_s=args.interval,
            max_iterations=args.max_polls,
            on_status=lambda s: logger.debug(f"{analysis_id}: {s.status}"),
        )

        if result.outcome == PollOutcome.COMPLETED:
            job = await client.get_analysis(args.call_id)
            print(json.dumps(job.result, indent=2, ensure_ascii=False))
            return 0

    logger.error(f"{analysis_id}: {result.outcome.value} after {result.iterations} polls: {result.message}")
    return 2 if result.outcome == PollOutcome.TIMED_OUT else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="CallScope transcript tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("parse", help="Parse a transcript file and print it as JSON")
    p.add_argument("file", help="Transcript .txt file")
    p.add_argument("--prompt", action="store_true", help="Print the analyzer prompt text instead of JSON")

    for name, help_text in (("calls", "List your calls"), ("analyze", "Analyze a call and wait for the result")):
        p = sub.add_parser(name, help=help_text)
        if name == "analyze":
            p.add_argument("call_id")
            p.add_argument("--interval", type=float, default=settings.POLL_INTERVAL_S, help="Seconds between status reads")
            p.add_argument("--max-polls", type=int, default=settings.MAX_POLL_ITERATIONS, help="Status reads before giving up")
        else:
            p.add_argument("--from", dest="date_from", default=None, help="YYYY-MM-DD")
            p.add_argument("--to", dest="date_to", default=None, help="YYYY-MM-DD")
        p.add_argument("--server", default=f"http://localhost:{settings.PORT}", help="CallScope base URL")
        p.add_argument("--user-id", required=True)
        p.add_argument("--email", required=True)

    args = parser.parse_args()

    try:
        if args.command == "parse":
            return cmd_parse(args)
        if args.command == "calls":
            return asyncio.run(cmd_calls(args))
        return asyncio.run(cmd_analyze(args))
    except AppError as e:
        logger.error(f"{e.code}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
