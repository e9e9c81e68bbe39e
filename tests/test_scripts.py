import json

import pytest

from otr_queue.config import Settings
from otr_queue.errors import TransportError
from otr_queue.publishers import QueuePublisherRegistry
from scripts import init_topology, producer


def test_parse_args_and_build_payloads():
    args = producer.parse_args(["match", "11", "12", "--lazer", "--priority", "high"])

    assert args.kind == "match"
    assert args.ids == [11, 12]
    assert producer.build_payload(args.kind, 11, args) == {"osuMatchId": 11, "isLazer": True}

    auto = producer.parse_args(["automation", "7", "--override-verified-state"])
    assert producer.build_payload(auto.kind, 7, auto) == {"tournamentId": 7, "overrideVerifiedState": True}


@pytest.mark.asyncio
async def test_producer_publishes_one_message_per_id(broker, capsys):
    registry = QueuePublisherRegistry(Settings(), connection_factory=broker)
    args = producer.parse_args(["beatmap", "1", "2", "--priority", "low", "--correlation-id", "batch-1"])

    published = await producer.main(args, registry=registry)

    assert [m["beatmapId"] for m in published] == [1, 2]
    assert {m["priority"] for m in published} == {0}
    assert {m["correlationId"] for m in published} == {"batch-1"}
    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line) for line in lines] == published
    await registry.close()


@pytest.mark.asyncio
async def test_init_topology_declares_every_queue(broker):
    declared = await init_topology.main(best_effort=False, connection_factory=broker)

    assert declared == [
        "osu.beatmaps",
        "osu.matches",
        "osu.players",
        "osutrack.players",
        "automated-checks.tournaments",
    ]
    assert all(conn.is_closed for conn in broker.connections)


@pytest.mark.asyncio
async def test_init_topology_best_effort_skips_unreachable_broker(broker):
    broker.failures = 10

    assert await init_topology.main(best_effort=True, connection_factory=broker) == []


@pytest.mark.asyncio
async def test_init_topology_strict_mode_raises(broker):
    broker.failures = 10

    with pytest.raises(TransportError):
        await init_topology.main(best_effort=False, connection_factory=broker)


@pytest.mark.asyncio
async def test_producer_metrics_flag_serves_on_configured_port(broker, monkeypatch):
    started = []
    monkeypatch.setattr(producer, "start_metrics_server", started.append)
    monkeypatch.setattr(producer, "Settings", lambda: Settings(metrics_port=9123))
    registry = QueuePublisherRegistry(Settings(), connection_factory=broker)

    await producer.main(producer.parse_args(["player", "7", "--metrics"]), registry=registry)
    await producer.main(producer.parse_args(["player", "8"]), registry=registry)

    assert started == [9123]
    await registry.close()
