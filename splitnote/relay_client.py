import asyncio
import json
import logging
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
from uuid import uuid4

import websockets
import websockets.exceptions

from .config import settings
from .errors import RelayTimeout


logger = logging.getLogger(__name__)

RELAY_MAX_MESSAGE_BYTES = 2 * 1024 * 1024

Connect = Callable[..., AsyncContextManager[Any]]

# errors that mean "this relay is unusable right now"
RELAY_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    RelayTimeout,
    websockets.exceptions.WebSocketException,
)


def default_connect(url: str, open_timeout: float) -> AsyncContextManager[Any]:
    return websockets.connect(
        url,
        open_timeout=open_timeout,
        close_timeout=1,
        max_size=RELAY_MAX_MESSAGE_BYTES,
        ping_interval=None,
    )


def parse_frame(raw: Any) -> Optional[List[Any]]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Dropping non-JSON relay frame")
        return None
    if not isinstance(message, list) or not message:
        return None
    return message


class RelayQuery:
    def __init__(
        self,
        connect: Connect = default_connect,
        connect_timeout: float = settings.relay_connect_timeout_seconds,
        timeout: float = settings.relay_query_timeout_seconds,
    ) -> None:
        self.connect = connect
        self.connect_timeout = connect_timeout
        self.timeout = timeout

    async def fetch(
        self,
        url: str,
        filters: Dict[str, Any],
        partial_ok: bool = False,
        sub_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        sub_id = sub_id or uuid4().hex[:16]
        events: List[Dict[str, Any]] = []
        async with self.connect(url, open_timeout=self.connect_timeout) as ws:
            await ws.send(json.dumps(["REQ", sub_id, filters]))
            try:
                await asyncio.wait_for(self._collect(ws, sub_id, events), self.timeout)
            except asyncio.TimeoutError:
                if not partial_ok:
                    raise RelayTimeout(f"{url} did not answer within {self.timeout}s")
                logger.debug("Query on %s timed out with %d events", url, len(events))
            try:
                await ws.send(json.dumps(["CLOSE", sub_id]))
            except websockets.exceptions.ConnectionClosed:
                logger.debug("%s closed before CLOSE was sent", url)
        return events

    async def _collect(self, ws: Any, sub_id: str, events: List[Dict[str, Any]]) -> None:
        while True:
            message = parse_frame(await ws.recv())
            if message is None:
                continue
            kind = message[0]
            if kind == "EVENT" and len(message) >= 3 and message[1] == sub_id:
                if isinstance(message[2], dict):
                    events.append(message[2])
            elif kind in {"EOSE", "CLOSED"} and len(message) >= 2 and message[1] == sub_id:
                return
            elif kind == "NOTICE":
                logger.info("Relay notice: %s", message[1:])
