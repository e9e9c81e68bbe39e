"""
Producer script for the data-worker queues.

- Builds one payload per id for the chosen message kind
- Publishes through ``QueuePublisherRegistry`` (rate limited when
  ``PUBLISH_RATE_LIMIT_ENABLED`` is set)
- Prints each stamped envelope as a JSON line

Examples:
    python -m scripts.producer beatmap 1234 5678 --priority high
    python -m scripts.producer match 111 --lazer
    python -m scripts.producer automation 42 --override-verified-state
    METRICS_PORT=9100 python -m scripts.producer player 7 --metrics
"""

import argparse
import asyncio
import json
from typing import Any, Optional, Sequence

from otr_queue.config import Settings
from otr_queue.constants import parse_priority
from otr_queue.logging import setup_logging
from otr_queue.metrics import start_metrics_server
from otr_queue.publishers import QueuePublisherRegistry
from otr_queue.rate_limit import get_rate_limiter
from otr_queue.tracing import start_tracing


KINDS = ("beatmap", "match", "player", "osutrack", "automation")


def build_payload(kind: str, item_id: int, args: argparse.Namespace) -> dict[str, Any]:
    """Return the wire payload for one id of the given kind."""
    if kind == "beatmap":
        return {"beatmapId": item_id, "skipAutomationChecks": args.skip_automation_checks}
    if kind == "match":
        return {"osuMatchId": item_id, "isLazer": args.lazer}
    if kind in ("player", "osutrack"):
        return {"osuPlayerId": item_id}
    if kind == "automation":
        return {"tournamentId": item_id, "overrideVerifiedState": args.override_verified_state}
    raise ValueError(f"unknown message kind: {kind}")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enqueue data-worker messages")
    parser.add_argument("kind", choices=KINDS)
    parser.add_argument("ids", nargs="+", type=int, help="osu! ids (tournament ids for 'automation')")
    parser.add_argument("--priority", default="normal", help="low | normal | high, or 0/5/10")
    parser.add_argument("--correlation-id", default=None, help="Reuse one correlation id for every message")
    parser.add_argument("--lazer", action="store_true", help="Matches were played on lazer")
    parser.add_argument("--skip-automation-checks", action="store_true")
    parser.add_argument("--override-verified-state", action="store_true")
    parser.add_argument("--trace", action="store_true", help="Export spans to the console")
    parser.add_argument("--metrics", action="store_true", help="Serve Prometheus metrics on METRICS_PORT")
    return parser.parse_args(argv)


async def main(args: argparse.Namespace, registry: Optional[QueuePublisherRegistry] = None) -> list[dict[str, Any]]:
    """Publish one message per id and return the stamped envelopes."""
    settings = Settings()
    if args.metrics:
        start_metrics_server(settings.metrics_port)
    owns_registry = registry is None
    if registry is None:
        registry = QueuePublisherRegistry(settings, rate_limiter=get_rate_limiter(settings))

    publish = {
        "beatmap": registry.fetch_beatmap,
        "match": registry.fetch_match,
        "player": registry.fetch_player,
        "osutrack": registry.fetch_player_osu_track,
        "automation": registry.process_automation_check,
    }[args.kind]

    metadata: dict[str, Any] = {"priority": parse_priority(args.priority)}
    if args.correlation_id:
        metadata["correlationId"] = args.correlation_id

    published: list[dict[str, Any]] = []
    try:
        for item_id in args.ids:
            message = await publish(build_payload(args.kind, item_id, args), {"metadata": metadata})
            print(json.dumps(message))
            published.append(message)
    finally:
        if owns_registry:
            await registry.close()
    return published


if __name__ == "__main__":
    cli_args = parse_args()
    setup_logging(Settings().log_level)
    if cli_args.trace:
        start_tracing()
    asyncio.run(main(cli_args))
