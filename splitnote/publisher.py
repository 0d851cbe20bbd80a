import asyncio
import json
import logging
from typing import Any, List, Sequence, Tuple

import websockets
import websockets.exceptions

from .config import settings
from .errors import NoRelaysAccepted, RelayTimeout
from .models import Event, PublishResult, RelayOutcome
from .relay_client import Connect, default_connect, parse_frame


logger = logging.getLogger(__name__)


class RelayPublisher:
    """Broadcasts one signed event to several relays and collects their acks.

    Relays are independent: one relay failing or timing out never affects the
    outcome recorded for another, and the call as a whole succeeds when at
    least one relay accepted the event.
    """

    def __init__(
        self,
        connect: Connect = default_connect,
        connect_timeout: float = settings.relay_connect_timeout_seconds,
        ack_timeout: float = settings.relay_ack_timeout_seconds,
    ) -> None:
        self.connect = connect
        self.connect_timeout = connect_timeout
        self.ack_timeout = ack_timeout

    async def publish(self, event: Event, urls: Sequence[str]) -> PublishResult:
        targets = list(dict.fromkeys(urls))
        if not targets:
            return PublishResult(success=False, event_id=event.id, error="No relays configured")

        outcomes: List[RelayOutcome] = list(
            await asyncio.gather(*(self._publish_one(event, url) for url in targets))
        )
        accepted = [outcome.url for outcome in outcomes if outcome.accepted]
        if accepted:
            logger.info("Event %s accepted by %d/%d relays", event.id, len(accepted), len(targets))
            return PublishResult(success=True, event_id=event.id, per_relay=outcomes)

        logger.warning("Event %s rejected by all %d relays", event.id, len(targets))
        return PublishResult(
            success=False,
            event_id=event.id,
            per_relay=outcomes,
            error="Failed to publish to any relay",
        )

    async def publish_or_raise(self, event: Event, urls: Sequence[str]) -> PublishResult:
        result = await self.publish(event, urls)
        if not result.success:
            raise NoRelaysAccepted(result.error or "Failed to publish to any relay", result)
        return result

    async def _publish_one(self, event: Event, url: str) -> RelayOutcome:
        frame = json.dumps(["EVENT", event.model_dump()], ensure_ascii=False)
        try:
            async with self.connect(url, open_timeout=self.connect_timeout) as ws:
                await ws.send(frame)
                try:
                    accepted, message = await asyncio.wait_for(
                        self._await_ack(ws, event.id), self.ack_timeout
                    )
                except asyncio.TimeoutError:
                    return self._timed_out(
                        url, f"{url} did not acknowledge within {self.ack_timeout}s"
                    )
        except asyncio.TimeoutError:
            # on 3.11+ this is also an OSError, so it is caught first
            return self._timed_out(
                url, f"{url} did not accept a connection within {self.connect_timeout}s"
            )
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            logger.warning("Publishing to %s failed: %s", url, exc)
            return RelayOutcome(url=url, accepted=False, error=str(exc) or type(exc).__name__)

        if not accepted:
            logger.info("%s rejected %s: %s", url, event.id, message)
            return RelayOutcome(url=url, accepted=False, error=message or "rejected")
        return RelayOutcome(url=url, accepted=True)

    def _timed_out(self, url: str, message: str) -> RelayOutcome:
        error = RelayTimeout(message)
        logger.warning("%s", error)
        return RelayOutcome(url=url, accepted=False, error=str(error))

    async def _await_ack(self, ws: Any, event_id: str) -> Tuple[bool, str]:
        while True:
            message = parse_frame(await ws.recv())
            if message is None or message[0] != "OK" or len(message) < 3:
                continue
            if message[1] != event_id:
                continue
            reason = message[3] if len(message) > 3 else ""
            return bool(message[2]), str(reason)
