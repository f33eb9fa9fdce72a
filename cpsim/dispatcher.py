import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Set

from ocpp.messages import Call, CallError, CallResult

from . import codec
from .errors import MalformedEnvelope, OrphanedResult, ProtocolReject, TransportNotReady

ResultHandler = Callable[[dict], Awaitable[None]]


@dataclass
class PendingAction:
    action: str
    unique_id: str
    issued_at: float = field(default_factory=time.monotonic)
    done: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    error: Optional[ProtocolReject] = None

    def resolve(self, outcome: str) -> None:
        if not self.done.done():
            self.done.set_result(outcome)


class CallDispatcher:
    """Single-slot request/response correlation.

    Only one correlated request is outstanding at a time; a second ``send``
    waits until the slot is released by the matching CallResult/CallError,
    by ``reset()`` or, when ``call_timeout`` is set, by the timeout.
    """

    def __init__(self, command_handler, call_timeout: Optional[float] = None):
        self._command_handler = command_handler
        self._call_timeout = call_timeout or None
        self._transport = None
        self._pending: Optional[PendingAction] = None
        self._expiry: Optional[asyncio.TimerHandle] = None
        self._uncorrelated: Set[str] = set()
        self._result_handlers: Dict[str, ResultHandler] = {}

    @property
    def pending(self) -> Optional[PendingAction]:
        return self._pending

    @property
    def ready(self) -> bool:
        return self._transport is not None and self._transport.is_open

    def attach(self, transport) -> None:
        self._transport = transport

    def register_result(self, action: str, handler: ResultHandler) -> None:
        self._result_handlers[action] = handler

    async def slot_free(self) -> None:
        while self._pending is not None:
            await asyncio.shield(self._pending.done)
        if not self.ready:
            raise TransportNotReady("WebSocket not connected")

    async def send(self, action: str, payload: dict) -> PendingAction:
        if not self.ready:
            raise TransportNotReady(f"WebSocket not connected, {action} dropped")
        await self.slot_free()
        pending = PendingAction(action, str(uuid.uuid4()))
        self._pending = pending
        if self._call_timeout:
            self._expiry = asyncio.get_running_loop().call_later(
                self._call_timeout, self._expire, pending
            )
        logging.info(f"→ {action} ({pending.unique_id})")
        await self._transport.send(codec.encode_call(pending.unique_id, action, payload))
        return pending

    async def send_uncorrelated(self, action: str, payload: dict) -> str:
        """Fire-and-forget call; its reply is deliberately not observed."""
        if not self.ready:
            raise TransportNotReady(f"WebSocket not connected, {action} dropped")
        unique_id = str(uuid.uuid4())
        self._uncorrelated.add(unique_id)
        logging.info(f"→ {action} ({unique_id}, uncorrelated)")
        await self._transport.send(codec.encode_call(unique_id, action, payload))
        return unique_id

    async def on_receive(self, raw) -> None:
        try:
            message = codec.decode(raw)
        except MalformedEnvelope as e:
            logging.error(f"Malformed message dropped: {e} ({raw!r:.200})")
            return

        if isinstance(message, Call):
            await self._handle_call(message)
            return

        try:
            pending = self._take(message.unique_id)
        except OrphanedResult as e:
            logging.warning(str(e))
            return
        if pending is None:
            return
        if isinstance(message, CallError):
            pending.error = ProtocolReject(
                pending.action, message.error_code, message.error_description, message.error_details
            )
            logging.error(f"← CallError: {pending.error} {pending.error.details}")
            pending.resolve("error")
            return

        logging.info(f"← {pending.action}.conf {message.payload}")
        handler = self._result_handlers.get(pending.action)
        try:
            if handler is not None:
                await handler(message.payload or {})
        except Exception:
            logging.exception(f"Handling {pending.action}.conf failed")
        finally:
            pending.resolve("result")

    def reset(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        pending, self._pending = self._pending, None
        self._transport = None
        self._uncorrelated.clear()
        if pending is not None:
            logging.info(f"Pending {pending.action} discarded")
            pending.resolve("discarded")

    def _take(self, unique_id: str) -> Optional[PendingAction]:
        if unique_id in self._uncorrelated:
            self._uncorrelated.discard(unique_id)
            logging.debug(f"← reply to uncorrelated call {unique_id} ignored")
            return None
        pending = self._pending
        if pending is None or pending.unique_id != unique_id:
            raise OrphanedResult(
                f"Orphaned result {unique_id} dropped (pending: {pending.action if pending else None})"
            )
        self._pending = None
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        return pending

    def _expire(self, pending: PendingAction) -> None:
        if self._pending is pending:
            logging.warning(f"No reply to {pending.action} within {self._call_timeout}s, releasing slot")
            self._pending = None
            self._expiry = None
            pending.resolve("timeout")

    async def _handle_call(self, message: Call) -> None:
        logging.info(f"← {message.action} ({message.unique_id}) {message.payload}")
        reply, after = await self._command_handler.handle_call(message)
        if not self.ready:
            logging.warning(f"Connection gone before {message.action} reply could be sent")
            return
        await self._transport.send(codec.encode_reply(reply))
        if isinstance(reply, CallResult):
            logging.info(f"→ {message.action}.conf {reply.payload}")
        else:
            logging.info(f"→ CallError {reply.error_code} for {message.action}")
        if after is not None:
            after()
