"""Publisher registry: one ``QueuePublisher`` per data-worker queue.

The registry is the composition root for publishing. The hosting process
constructs it once from ``Settings`` (tests pass a fake connection factory),
calls the typed publish methods from request handlers and closes it on
shutdown. There are no module-level publisher singletons.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

from otr_queue.config import Settings
from otr_queue.rabbit import ConnectionFactory, PublishOptionsInput, QueuePublisher
from otr_queue.rate_limit import FixedWindowRateLimiter


logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class FetchBeatmapPayload(_Payload):
    beatmap_id: int = Field(alias="beatmapId", gt=0)
    skip_automation_checks: bool = Field(default=False, alias="skipAutomationChecks")


class FetchMatchPayload(_Payload):
    osu_match_id: int = Field(alias="osuMatchId", gt=0)
    is_lazer: bool = Field(default=False, alias="isLazer")


class FetchPlayerPayload(_Payload):
    osu_player_id: int = Field(alias="osuPlayerId", gt=0)


class FetchPlayerOsuTrackPayload(_Payload):
    osu_player_id: int = Field(alias="osuPlayerId", gt=0)


class ProcessTournamentAutomationCheckPayload(_Payload):
    tournament_id: int = Field(alias="tournamentId", gt=0)
    override_verified_state: bool = Field(default=False, alias="overrideVerifiedState")


P = TypeVar("P", bound=_Payload)
PayloadInput = Union[_Payload, Mapping[str, Any]]


def _coerce_payload(model: Type[P], payload: PayloadInput) -> P:
    if isinstance(payload, model):
        return payload
    return model.model_validate(dict(payload))


class QueuePublisherRegistry:
    """Typed publish methods for every data-worker queue.

    When ``rate_limiter`` is given, every publish from this registry goes
    through it, so all message types share one FIFO lane and one budget.

    Example:
    ```python
    registry = QueuePublisherRegistry(Settings())
    await registry.fetch_match({"osuMatchId": 111, "isLazer": True})
    await registry.close()
    ```
    """

    def __init__(
        self,
        settings: Settings,
        connection_factory: Optional[ConnectionFactory] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter

        def make(queue: str) -> QueuePublisher:
            return QueuePublisher(
                settings.amqp_url,
                queue,
                connection_factory=connection_factory,
                settings=settings,
            )

        self.beatmaps = make(settings.queue_osu_beatmaps)
        self.matches = make(settings.queue_osu_matches)
        self.players = make(settings.queue_osu_players)
        self.osu_track_players = make(settings.queue_osutrack_players)
        self.automation_checks = make(settings.queue_automated_checks_tournaments)

    def publishers(self) -> list[QueuePublisher]:
        return [self.beatmaps, self.matches, self.players, self.osu_track_players, self.automation_checks]

    def queue_names(self) -> list[str]:
        return [p.queue_name for p in self.publishers()]

    async def fetch_beatmap(self, payload: PayloadInput, options: PublishOptionsInput = None) -> dict[str, Any]:
        return await self._publish(self.beatmaps, _coerce_payload(FetchBeatmapPayload, payload), options)

    async def fetch_match(self, payload: PayloadInput, options: PublishOptionsInput = None) -> dict[str, Any]:
        return await self._publish(self.matches, _coerce_payload(FetchMatchPayload, payload), options)

    async def fetch_player(self, payload: PayloadInput, options: PublishOptionsInput = None) -> dict[str, Any]:
        return await self._publish(self.players, _coerce_payload(FetchPlayerPayload, payload), options)

    async def fetch_player_osu_track(
        self, payload: PayloadInput, options: PublishOptionsInput = None
    ) -> dict[str, Any]:
        return await self._publish(
            self.osu_track_players, _coerce_payload(FetchPlayerOsuTrackPayload, payload), options
        )

    async def process_automation_check(
        self, payload: PayloadInput, options: PublishOptionsInput = None
    ) -> dict[str, Any]:
        return await self._publish(
            self.automation_checks, _coerce_payload(ProcessTournamentAutomationCheckPayload, payload), options
        )

    async def close(self) -> None:
        """Close every publisher; one failing does not stop the others."""
        results = await asyncio.gather(*(p.close() for p in self.publishers()), return_exceptions=True)
        for publisher, result in zip(self.publishers(), results):
            if isinstance(result, Exception):
                logger.debug("error while closing publisher for %s: %r", publisher.queue_name, result)

    async def _publish(
        self, publisher: QueuePublisher, payload: _Payload, options: PublishOptionsInput
    ) -> dict[str, Any]:
        body = payload.to_wire()
        if self.rate_limiter is None:
            return await publisher.publish(body, options)
        return await self.rate_limiter.schedule(lambda: publisher.publish(body, options))
