import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

SUBPROTOCOLS = ["ocpp1.6", "ocpp1.5"]
ABNORMAL_CLOSURE = 1006


class WebSocketTransport:
    """One OCPP-J WebSocket connection, reported through four callbacks."""

    def __init__(
        self,
        on_open: Callable[[], Awaitable[None]],
        on_message: Callable[[str], Awaitable[None]],
        on_close: Callable[[int], Awaitable[None]],
        on_error: Callable[[str], Awaitable[None]],
    ):
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        # close code requested while the handshake was still running
        self._close_requested: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def open(self, url: str, subprotocols: List[str] = SUBPROTOCOLS, ssl=None) -> None:
        kwargs = {"ssl": ssl} if ssl is not None else {}
        self._close_requested = None
        try:
            ws = await websockets.connect(url, subprotocols=subprotocols, **kwargs)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if self._close_requested is None:
                await self._on_error(f"connect to {url} failed: {e}")
            return
        if self._close_requested is not None:
            logging.info("Close requested during the handshake, dropping the new WebSocket")
            await ws.close(code=self._close_requested)
            return
        self._ws = ws
        logging.info(f"WebSocket connected (subprotocol={self._ws.subprotocol})")
        self._reader = asyncio.create_task(self._read_loop(self._ws), name="ocpp-reader")
        await self._on_open()

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise ConnectionError("WebSocket is not open")
        await self._ws.send(text)

    async def close(self, code: int) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            self._close_requested = code
            return
        await ws.close(code=code)
        if self._reader is not None and self._reader is not asyncio.current_task():
            # let the reader report the close code before returning
            await asyncio.wait([self._reader], timeout=5)

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                await self._on_message(message)
        except ConnectionClosed:
            pass
        except Exception as e:
            logging.exception("WebSocket reader failed")
            self._ws = None
            await self._on_error(str(e))
            return
        self._ws = None
        await self._on_close(ws.close_code or ABNORMAL_CLOSURE)
