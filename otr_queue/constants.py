"""Shared constants for queue names, message priorities and queue arguments.

These values centralize naming so the web publishers and the data-worker
consumers declare and address the same queues.

Priorities (message ``priority`` field and AMQP ``priority`` property):
- ``LOW`` (0): bulk refetches and background backfills.
- ``NORMAL`` (5): default for everything enqueued by request handlers.
- ``HIGH`` (10): admin-initiated work that should jump the queue.

Queues:
- ``osu.beatmaps``: fetch beatmap data from the osu! API.
- ``osu.matches``: fetch match data from the osu! API.
- ``osu.players``: fetch player data from the osu! API.
- ``osutrack.players``: fetch player history from osu!track.
- ``automated-checks.tournaments``: run tournament automation checks.
"""
from __future__ import annotations

from enum import IntEnum


class MessagePriority(IntEnum):
    LOW = 0
    NORMAL = 5
    HIGH = 10


# x-max-priority; must cover the highest MessagePriority
PRIORITY_LEVELS = int(max(MessagePriority))

QUEUE_PRIORITY_ARGUMENTS: dict[str, int] = {"x-max-priority": PRIORITY_LEVELS}

QUEUE_OSU_BEATMAPS = "osu.beatmaps"
QUEUE_OSU_MATCHES = "osu.matches"
QUEUE_OSU_PLAYERS = "osu.players"
QUEUE_OSUTRACK_PLAYERS = "osutrack.players"
QUEUE_AUTOMATED_CHECKS_TOURNAMENTS = "automated-checks.tournaments"


def parse_priority(value: str | int) -> MessagePriority:
    """Parse a user-provided priority (name or number) into ``MessagePriority``.

    Names are case-insensitive (``low``/``normal``/``high``). Numbers must be
    one of the enum values. Raises ``ValueError`` otherwise.
    """
    if isinstance(value, int):
        return MessagePriority(value)
    v = str(value).strip()
    if v.lstrip("-").isdigit():
        return MessagePriority(int(v))
    try:
        return MessagePriority[v.upper()]
    except KeyError:
        raise ValueError(f"unknown priority: {value!r}") from None
