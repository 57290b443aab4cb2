"""
Jetstream Feed Client

Maintains a long-lived websocket subscription to a Bluesky Jetstream
instance and exposes it as an endless async iterator of RawRecords.

Behavior
--------
- Reconnects with bounded exponential backoff whenever the socket drops.
- On (re)connect, resumes from the cursor returned by `cursor_source`, or
  from "now" when no cursor is known. Jetstream replays inclusively from the
  given `time_us`.
- Undecodable messages are skipped and counted; they never end the stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence
from urllib.parse import urlencode

import websockets
from tenacity import RetryCallState, wait_random_exponential
from websockets.exceptions import WebSocketException

from ..core.errors import MalformedInputError
from ..core.metrics import FEED_RECONNECTS, RECORDS_DROPPED
from .models import RawRecord

logger = logging.getLogger("aigis.feed")


def decode_message(message: Any) -> RawRecord:
    """
    Decode one Jetstream frame.

    Raises
    ------
    MalformedInputError
        If the frame is not a JSON object.
    """
    if isinstance(message, (bytes, bytearray)):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedInputError("frame is not valid UTF-8") from exc

    try:
        data = json.loads(message)
    except (TypeError, ValueError) as exc:
        raise MalformedInputError(f"frame is not JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedInputError("frame is not a JSON object")

    cursor = data.get("time_us")
    if not isinstance(cursor, int) or isinstance(cursor, bool):
        cursor = None

    return RawRecord(data=data, cursor=cursor)


class JetstreamClient:
    def __init__(
        self,
        url: str,
        wanted_collections: Sequence[str] = (),
        wanted_dids: Sequence[str] = (),
        cursor_source: Optional[Callable[[], Optional[int]]] = None,
        reconnect_min_wait: float = 1.0,
        reconnect_max_wait: float = 60.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.wanted_collections = list(wanted_collections)
        self.wanted_dids = list(wanted_dids)
        self._cursor_source = cursor_source or (lambda: None)
        self._wait = wait_random_exponential(
            multiplier=reconnect_min_wait,
            min=reconnect_min_wait,
            max=reconnect_max_wait,
        )
        self._connect = connect

        self.malformed = 0
        self.reconnects = 0

    @classmethod
    def from_settings(cls, settings, cursor_source=None) -> "JetstreamClient":
        return cls(
            url=settings.jetstream_url,
            wanted_collections=settings.wanted_collection_list,
            wanted_dids=settings.allowed_user_list,
            cursor_source=cursor_source,
            reconnect_min_wait=settings.reconnect_min_wait,
            reconnect_max_wait=settings.reconnect_max_wait,
        )

    def subscription_url(self, cursor: Optional[int] = None) -> str:
        params: List[tuple] = [("wantedCollections", c) for c in self.wanted_collections]
        params += [("wantedDids", d) for d in self.wanted_dids]
        if cursor is not None:
            params.append(("cursor", str(cursor)))
        if not params:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode(params)}"

    def backoff_delay(self, attempt: int) -> float:
        """Random exponential delay for the given reconnect attempt (0-based)."""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = attempt + 1
        return self._wait(state)

    async def records(self) -> AsyncIterator[RawRecord]:
        """Yield records forever, reconnecting as needed. Cancel to stop."""
        attempt = 0
        while True:
            url = self.subscription_url(self._cursor_source())
            try:
                logger.info("Connecting to feed: %s", url)
                async with self._connect(url) as socket:
                    async for message in socket:
                        attempt = 0
                        try:
                            record = decode_message(message)
                        except MalformedInputError as exc:
                            self.malformed += 1
                            RECORDS_DROPPED.labels(reason="malformed").inc()
                            logger.warning("Skipping malformed feed frame: %s", exc)
                            continue
                        yield record
                logger.warning("Feed closed by server")
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                logger.warning("Feed connection lost: %s: %s", type(exc).__name__, exc)

            delay = self.backoff_delay(attempt)
            attempt += 1
            self.reconnects += 1
            FEED_RECONNECTS.inc()
            logger.info("Reconnecting to feed in %.1fs (attempt %d)", delay, attempt)
            await asyncio.sleep(delay)
