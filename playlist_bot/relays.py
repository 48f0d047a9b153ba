from __future__ import annotations
import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict], Awaitable[object]]
FilterFactory = Callable[["RelayConnection"], dict]


class RelayDisconnected(ConnectionError):
    pass


class RelayConnection:
    """One WebSocket to a Nostr relay, speaking NIP-01 JSON frames."""

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession,
        *,
        connect_timeout: float = 5.0,
        heartbeat: float = 30.0,
    ):
        self.url = url
        self.session = session
        self.connect_timeout = connect_timeout
        self.heartbeat = heartbeat
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        # Newest created_at seen on this relay; resubscriptions start here.
        self.last_seen: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self.ws.closed

    async def connect(self) -> None:
        self.ws = await asyncio.wait_for(
            self.session.ws_connect(self.url, heartbeat=self.heartbeat),
            timeout=self.connect_timeout,
        )

    async def _send(self, frame: list) -> None:
        if not self.connected:
            raise RelayDisconnected(f"{self.url} is not connected")
        await self.ws.send_str(json.dumps(frame, ensure_ascii=False))

    async def subscribe(self, sub_id: str, flt: dict) -> None:
        await self._send(['REQ', sub_id, flt])

    async def publish(self, event: dict) -> None:
        await self._send(['EVENT', event])

    async def frames(self) -> AsyncIterator[list]:
        if not self.ws:
            raise RelayDisconnected(f"{self.url} is not connected")
        async for msg in self.ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    logger.debug("Ignoring non-JSON frame from %s", self.url)
                    continue
                if not isinstance(frame, list) or not frame:
                    logger.debug("Ignoring unexpected frame from %s: %r", self.url, frame)
                    continue
                yield frame
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise RelayDisconnected(f"{self.url} transport error: {self.ws.exception()}")
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                break
        raise RelayDisconnected(f"{self.url} closed the connection")

    async def close(self) -> None:
        ws = self.ws
        self.ws = None
        if ws is not None and not ws.closed:
            await ws.close()


class RelayPool:
    def __init__(
        self,
        urls: Sequence[str],
        *,
        connect_timeout: float = 5.0,
        reconnect_delay: float = 10.0,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
        connection_factory: Optional[Callable[..., RelayConnection]] = None,
    ):
        self.urls = list(urls)
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self._session_factory = session_factory
        self._connection_factory = connection_factory or RelayConnection
        self.session: Optional[aiohttp.ClientSession] = None
        self.live: Dict[str, RelayConnection] = {}
        self._tasks: List[asyncio.Task] = []

    def _new_connection(self, url: str) -> RelayConnection:
        if self.session is None:
            self.session = self._session_factory()
        return self._connection_factory(url, self.session, connect_timeout=self.connect_timeout)

    async def _connect_one(self, url: str) -> Optional[RelayConnection]:
        conn = self._new_connection(url)
        try:
            await conn.connect()
        except asyncio.TimeoutError:
            logger.warning("Timed out connecting to relay %s after %.1fs", url, self.connect_timeout)
            return None
        except Exception as exc:
            logger.warning("Failed to connect to relay %s: %s", url, exc)
            return None
        logger.info("Connected to relay %s", url)
        return conn

    async def connect_all(self) -> List[RelayConnection]:
        results = await asyncio.gather(*(self._connect_one(url) for url in self.urls))
        for conn in results:
            if conn is not None:
                self.live[conn.url] = conn
        return list(self.live.values())

    def connections(self) -> List[RelayConnection]:
        return list(self.live.values())

    async def run(self, sub_id: str, filter_factory: FilterFactory, handler: EventHandler) -> None:
        """Run one receive loop per live relay until cancelled."""
        self._tasks = [
            asyncio.create_task(self._receive_loop(conn, sub_id, filter_factory, handler))
            for conn in self.connections()
        ]
        try:
            await asyncio.gather(*self._tasks)
        finally:
            for task in self._tasks:
                task.cancel()

    async def _receive_loop(
        self,
        conn: RelayConnection,
        sub_id: str,
        filter_factory: FilterFactory,
        handler: EventHandler,
    ) -> None:
        url = conn.url
        while True:
            try:
                if not conn.connected:
                    await conn.connect()
                    logger.info("Reconnected to relay %s", url)
                self.live[url] = conn
                await conn.subscribe(sub_id, filter_factory(conn))
                async for frame in conn.frames():
                    await self._dispatch(conn, sub_id, frame, handler)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Relay %s disconnected: %s", url, exc)
            self.live.pop(url, None)
            await conn.close()
            await asyncio.sleep(self.reconnect_delay)

    async def _dispatch(self, conn: RelayConnection, sub_id: str, frame: list, handler: EventHandler) -> None:
        kind = frame[0]
        if kind == 'EVENT':
            if len(frame) < 3 or frame[1] != sub_id or not isinstance(frame[2], dict):
                return
            created_at = frame[2].get('created_at')
            if isinstance(created_at, int) and (conn.last_seen is None or created_at > conn.last_seen):
                conn.last_seen = created_at
            try:
                await handler(conn.url, frame[2])
            except Exception:
                logger.exception("Unhandled error processing event from %s", conn.url)
        elif kind == 'EOSE':
            logger.debug("End of stored events on %s", conn.url)
        elif kind == 'NOTICE':
            logger.info("Notice from %s: %s", conn.url, frame[1] if len(frame) > 1 else '')
        elif kind == 'OK':
            if len(frame) >= 3 and frame[2] is False:
                logger.warning("Relay %s rejected event %s: %s", conn.url, frame[1], frame[3] if len(frame) > 3 else '')
            else:
                logger.debug("Relay %s accepted event %s", conn.url, frame[1] if len(frame) > 1 else '')
        elif kind == 'CLOSED':
            logger.warning("Relay %s closed subscription: %s", conn.url, frame[2] if len(frame) > 2 else '')
        else:
            logger.debug("Ignoring %s frame from %s", kind, conn.url)

    async def publish(self, event: dict) -> Dict[str, Optional[BaseException]]:
        targets = self.connections()

        async def _send(conn: RelayConnection) -> Optional[BaseException]:
            try:
                await conn.publish(event)
            except Exception as exc:
                logger.warning("Failed to publish %s to %s: %s", event.get('id'), conn.url, exc)
                return exc
            return None

        results = await asyncio.gather(*(_send(conn) for conn in targets))
        return {conn.url: outcome for conn, outcome in zip(targets, results)}

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        self._tasks = []
        for conn in list(self.live.values()):
            await conn.close()
        self.live.clear()
        if self.session is not None:
            await self.session.close()
            self.session = None
