"""Charge point protocol engine.

``ChargePointEngine`` owns the connection lifecycle, the correlation
dispatcher, the transaction state machine, the three telemetry schedulers and
the configuration store. Everything runs on one asyncio loop, so state is
shared between the inbound command path and the schedulers without locks.
"""
import asyncio
import json
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Set

from ocpp.v16 import call
from ocpp.v16.enums import (
    Action,
    ChargePointErrorCode,
    ChargePointStatus,
    Measurand,
    ReadingContext,
    Reason,
    RegistrationStatus,
    UnitOfMeasure,
    ValueFormat,
)

from . import codec
from .config import SimulatorConfig
from .dispatcher import CallDispatcher, PendingAction
from .errors import (
    AlreadyConnecting,
    AlreadyOperational,
    NotConnected,
    SimulatorError,
    TransportNotReady,
)
from .ocpp_handlers import RemoteCommandHandler
from .scheduler import PeriodicTask
from .state_machine import ConnectionState, TransactionMachine, TransactionState
from .store import METER_VALUES_SAMPLE_INTERVAL, NUMBER_OF_CONNECTORS, ConfigurationStore
from .transport import SUBPROTOCOLS, WebSocketTransport
from .vendors import DEFAULT_VENDOR, build_soc_data

NORMAL_CLOSE_CODE = 3001    # app initiated disconnect
RESET_CLOSE_CODE = 1012     # service restart
TOKEN_CHARS = string.ascii_letters + string.digits

DisplayHook = Callable[[str, Any], None]


def new_identity_token(length: int = 36) -> str:
    return "".join(secrets.choice(TOKEN_CHARS) for _ in range(length))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _number(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


@dataclass
class Session:
    token: str = field(default_factory=new_identity_token)
    opened_at: Optional[str] = None


class ChargePointEngine:
    def __init__(
        self,
        settings: Optional[SimulatorConfig] = None,
        transport_factory: Callable[..., Any] = WebSocketTransport,
        on_display: Optional[DisplayHook] = None,
    ):
        self.settings = settings or SimulatorConfig()
        self._transport_factory = transport_factory
        self.on_display = on_display
        self._tasks: Set[asyncio.Task] = set()

        self.handler = RemoteCommandHandler(self)
        self.dispatcher = CallDispatcher(self.handler, call_timeout=self.settings.call_timeout_sec)
        self.dispatcher.register_result(Action.boot_notification, self._on_boot_conf)
        self.dispatcher.register_result(Action.heartbeat, self._on_heartbeat_conf)
        self.dispatcher.register_result(Action.authorize, self._on_authorize_conf)
        self.dispatcher.register_result(Action.start_transaction, self._on_start_conf)
        self.dispatcher.register_result(Action.stop_transaction, self._on_stop_conf)
        self.dispatcher.register_result(Action.data_transfer, self._on_data_transfer_conf)

        self.heartbeat = PeriodicTask("Heartbeat", self.send_heartbeat, fire_immediately=True)
        self.meter_loop = PeriodicTask("MeterValues loop", self._meter_loop_fire)
        self.data_transfer_loop = PeriodicTask("DataTransfer loop", self.send_data_transfer_soc)

        self.state = ConnectionState.DISCONNECTED
        self.session: Optional[Session] = None
        self.transport = None
        self._init_state()

    def _init_state(self) -> None:
        s = self.settings
        self.store = ConfigurationStore.default(s.connectors, s.meter_period_sec)
        self.tx = TransactionMachine()
        self.meter_wh = float(s.meter_start_wh)
        self.id_tag = s.id_tag

    # -------- task bookkeeping --------

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` as a task that is cancelled when the session ends."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, SimulatorError):
            logging.warning(f"{task.get_name()}: {exc}")
        elif exc is not None:
            logging.error(f"{task.get_name()} failed", exc_info=exc)

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    def _display(self, name: str, value: Any) -> None:
        if self.on_display is None:
            return
        try:
            self.on_display(name, value)
        except Exception:
            logging.exception(f"display hook failed for {name}")

    def _set_state(self, state: str) -> None:
        self.state = state
        self._display("connection_state", state)

    # -------- connection lifecycle --------

    async def connect(self) -> Session:
        if self.state == ConnectionState.CONNECTING:
            raise AlreadyConnecting("connection attempt already in progress")
        if self.state != ConnectionState.DISCONNECTED:
            raise AlreadyOperational(f"already {self.state.lower()}")

        session = self.session = Session()
        self._set_state(ConnectionState.CONNECTING)
        url = self.settings.url
        logging.info(f"Connecting to CSMS: {url} (session {session.token})")
        transport = self._transport_factory(
            on_open=partial(self._on_open, session),
            on_message=partial(self._on_message, session),
            on_close=partial(self._on_close, session),
            on_error=partial(self._on_error, session),
        )
        self.transport = transport
        self.dispatcher.attach(transport)
        await transport.open(url, SUBPROTOCOLS, ssl=self.settings.ssl_context())
        return session

    async def disconnect(self, code: int = NORMAL_CLOSE_CODE) -> None:
        if self.state not in (ConnectionState.CONNECTING, ConnectionState.OPERATIONAL):
            raise NotConnected("WebSocket not connected")
        logging.info("Disconnecting WebSocket...")
        session, transport = self.session, self.transport
        self._set_state(ConnectionState.CLOSING)
        self._stop_schedulers()
        self.dispatcher.reset()
        await transport.close(code)
        if self.session is session:
            self._teardown()

    async def _on_open(self, session: Session) -> None:
        if session is not self.session:
            return
        session.opened_at = _now()
        self._set_state(ConnectionState.OPERATIONAL)
        logging.info("Sending BootNotification...")
        await self._send_call(call.BootNotification(
            charge_point_vendor=self.settings.cp_vendor,
            charge_point_model=self.settings.cp_model,
            charge_point_serial_number=self.settings.cp_serial,
            charge_box_serial_number=f"{self.settings.cp_serial}.01",
            firmware_version=self.settings.firmware_version,
            meter_type=self.settings.meter_type,
            meter_serial_number=self.settings.meter_serial,
        ))

    async def _on_message(self, session: Session, raw: str) -> None:
        if session is not self.session:
            return
        await self.dispatcher.on_receive(raw)

    async def _on_close(self, session: Session, code: int) -> None:
        if session is not self.session:
            return
        if code == NORMAL_CLOSE_CODE:
            logging.info("WebSocket closed normally")
        else:
            logging.warning(f"WebSocket closed with code {code}; not reconnecting")
        self._teardown()

    async def _on_error(self, session: Session, reason: str) -> None:
        if session is not self.session:
            return
        logging.error(f"WebSocket error: {reason}")
        transport = self.transport
        self._teardown()
        if transport is not None and transport.is_open:
            await transport.close(NORMAL_CLOSE_CODE)

    def _stop_schedulers(self) -> None:
        self.heartbeat.stop()
        self.meter_loop.stop()
        self.data_transfer_loop.stop()

    def _teardown(self) -> None:
        self._stop_schedulers()
        self.dispatcher.reset()
        self._cancel_tasks()
        if self.tx.active:
            logging.info(f"Transaction {self.tx.transaction_id} discarded with the connection")
        self.tx.finish()
        self._display("transaction_id", None)
        self.session = None
        self.transport = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def reset(self) -> None:
        """Restart the simulator: drop the connection and all runtime state."""
        self._tasks.discard(asyncio.current_task())
        logging.info("Resetting simulator")
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPERATIONAL):
            await self.disconnect(RESET_CLOSE_CODE)
        elif self.state != ConnectionState.DISCONNECTED:
            self._teardown()
        self._init_state()

    async def _on_boot_conf(self, payload: dict) -> None:
        status = payload.get("status")
        if status != RegistrationStatus.accepted:
            logging.warning(f"BootNotification status is {status}")
        interval = self._heartbeat_interval(payload.get("interval"))
        if self.heartbeat.running:
            self.heartbeat.restart(interval)
        else:
            self.heartbeat.start(interval)
        self.spawn(self._initial_status(), name="initial-status")

    def _heartbeat_interval(self, value) -> float:
        try:
            interval = float(value)
        except (TypeError, ValueError):
            interval = 0
        if interval <= 0:
            logging.info(f"No usable heartbeat interval in boot reply, using {self.settings.heartbeat_sec}s")
            interval = self.settings.heartbeat_sec
        return interval

    async def _initial_status(self) -> None:
        await asyncio.sleep(self.settings.settle_delay_sec)
        for connector_id in range(1, self.store.get_int(NUMBER_OF_CONNECTORS) + 1):
            await self._send_status(connector_id, ChargePointStatus.available)

    # -------- outbound helpers --------

    async def _send_call(self, payload) -> Optional[PendingAction]:
        action, body = codec.to_wire(payload)
        try:
            return await self.dispatcher.send(action, body)
        except TransportNotReady as e:
            logging.warning(str(e))
            return None

    async def _send_sibling(self, payload) -> Optional[str]:
        action, body = codec.to_wire(payload)
        try:
            return await self.dispatcher.send_uncorrelated(action, body)
        except TransportNotReady as e:
            logging.warning(str(e))
            return None

    async def _send_status(self, connector_id: int, status: str) -> None:
        await self._send_sibling(call.StatusNotification(
            connector_id=connector_id,
            error_code=ChargePointErrorCode.no_error,
            status=status,
            info="",
            timestamp=_now(),
        ))
        self._display("connector_status", {"connector_id": connector_id, "status": status})
        logging.info(f"Sent connector status: {status} (connector {connector_id})")

    async def _after_primary(self, pending: PendingAction, then: Callable[[], Awaitable[None]]) -> None:
        # the sibling call waits for the primary's reply, then the settle delay
        await asyncio.shield(pending.done)
        await asyncio.sleep(self.settings.settle_delay_sec)
        await then()

    def _require_operational(self) -> None:
        if self.state != ConnectionState.OPERATIONAL:
            raise NotConnected("WebSocket not connected")

    # -------- user actions --------

    async def authorize(self, id_tag: Optional[str] = None) -> Optional[PendingAction]:
        self._require_operational()
        logging.info("Sending Authorize")
        return await self._send_call(call.Authorize(id_tag=id_tag or self.id_tag))

    async def send_status_notification(self, connector_id: int, status: str,
                                       error_code: str = ChargePointErrorCode.no_error,
                                       info: str = "") -> Optional[PendingAction]:
        self._require_operational()
        pending = await self._send_call(call.StatusNotification(
            connector_id=connector_id, error_code=error_code, status=status,
            info=info, timestamp=_now(),
        ))
        self._display("connector_status", {"connector_id": connector_id, "status": status})
        return pending

    async def start_transaction(self, connector_id: Optional[int] = None,
                                id_tag: Optional[str] = None) -> int:
        self._require_operational()
        connector_id = int(connector_id or self.settings.connector_id)
        id_tag = id_tag or self.id_tag
        tx_id = self.tx.begin(connector_id, id_tag, self.settings.starting_soc)
        self._display("transaction_id", tx_id)
        logging.info(f"Sending StartTransaction... (provisional tx {tx_id}, SoC {self.tx.soc}%)")
        pending = await self._send_call(call.StartTransaction(
            connector_id=connector_id,
            id_tag=id_tag,
            meter_start=int(self.meter_wh),
            timestamp=_now(),
        ))
        if pending is not None:
            self.spawn(
                self._after_primary(pending, partial(self._report_charging, connector_id)),
                name="status-charging",
            )
        return tx_id

    async def _report_charging(self, connector_id: int) -> None:
        # a stop that arrived while Starting has already moved the transaction on
        if self.tx.state != TransactionState.CHARGING or self.tx.connector_id != connector_id:
            logging.info(f"Transaction no longer charging, Charging status for connector {connector_id} skipped")
            return
        await self._send_status(connector_id, ChargePointStatus.charging)

    async def stop_transaction(self) -> None:
        self.tx.begin_stop()
        connector_id = self.tx.connector_id
        try:
            await self.dispatcher.slot_free()
        except TransportNotReady as e:
            logging.warning(f"{e}, StopTransaction dropped")
            return
        tx_id = self.tx.report_stop()
        logging.info(f"Sending StopTransaction for transaction {tx_id}")
        pending = await self._send_call(call.StopTransaction(
            meter_stop=int(self.meter_wh),
            timestamp=_now(),
            transaction_id=tx_id,
            reason=Reason.remote,
            id_tag=self.tx.id_tag,
        ))
        if pending is not None:
            self.spawn(self._after_primary(pending, partial(self._finish_stop, connector_id)),
                       name="status-available")

    async def _finish_stop(self, connector_id: int) -> None:
        await self._send_status(connector_id, ChargePointStatus.available)
        self.tx.finish()
        self._display("transaction_id", None)

    async def remote_start(self, id_tag: Optional[str] = None, connector_id: Optional[int] = None) -> int:
        if id_tag:
            self.id_tag = id_tag
        await asyncio.sleep(self.settings.remote_start_delay_sec)
        logging.info("Auto-starting transaction after RemoteStartTransaction")
        return await self.start_transaction(connector_id=connector_id)

    async def remote_stop(self, transaction_id=None) -> None:
        if transaction_id is not None and transaction_id != self.tx.transaction_id:
            logging.info(f"RemoteStopTransaction for {transaction_id}, stopping current {self.tx.transaction_id}")
        await self.stop_transaction()

    def change_configuration(self, key: str, value):
        entry = self.store.change(key, value)
        if entry.key == METER_VALUES_SAMPLE_INTERVAL and self.meter_loop.running:
            interval = int(entry.value)
            if interval == 0:
                self.meter_loop.stop()
            else:
                self.meter_loop.restart(interval, self.meter_loop.repeat)
        return entry

    # -------- telemetry --------

    async def send_heartbeat(self) -> Optional[PendingAction]:
        if not self.dispatcher.ready:
            return None
        return await self._send_call(call.Heartbeat())

    async def send_meter_values(self) -> Optional[PendingAction]:
        if not self.dispatcher.ready:
            logging.warning("WebSocket not connected, MeterValues dropped")
            return None
        interval = max(self.store.get_int(METER_VALUES_SAMPLE_INTERVAL), 1)
        sampled = [
            {"value": _number(self.meter_wh), "measurand": Measurand.energy_active_import_register,
             "unit": UnitOfMeasure.wh},
            {"value": str(max(0, round(self.meter_wh / interval))), "measurand": Measurand.power_active_import,
             "unit": UnitOfMeasure.w},
            {"value": "10", "measurand": Measurand.current_import, "unit": UnitOfMeasure.a},
        ]
        if self.settings.enable_soc and self.tx.locked:
            soc = self.tx.advance_soc(self.settings.soc_increment)
            sampled.append({
                "value": str(round(soc)),
                "measurand": Measurand.soc,
                "context": ReadingContext.sample_periodic,
                "format": ValueFormat.raw,
                "unit": UnitOfMeasure.percent,
            })
            logging.info(f"SoC updated: {soc:.1f}%")
        tx_id = self.tx.transaction_id
        return await self._send_call(call.MeterValues(
            connector_id=self.tx.connector_id or self.settings.connector_id,
            meter_value=[{"timestamp": _now(), "sampledValue": sampled}],
            transaction_id=tx_id if tx_id and tx_id > 0 else None,
        ))

    async def _meter_loop_fire(self) -> None:
        self.meter_wh += self.settings.meter_increment_wh
        await self.send_meter_values()

    async def send_data_transfer_soc(self) -> Optional[PendingAction]:
        if self.state != ConnectionState.OPERATIONAL or not self.tx.locked:
            logging.warning("Must be connected and charging to send DataTransfer")
            return None
        if not self.settings.enable_data_transfer:
            logging.info("DataTransfer disabled in settings")
            return None
        vendor_id = self.settings.vendor_id or DEFAULT_VENDOR
        soc = self.tx.advance_soc(self.settings.soc_increment)
        data = build_soc_data(vendor_id, soc, self.tx.id_tag)
        logging.info(f"Sending DataTransfer SoC: {soc:.1f}% via {vendor_id}")
        return await self._send_call(call.DataTransfer(
            vendor_id=vendor_id, message_id="SoCData", data=json.dumps(data),
        ))

    def _sample_interval(self) -> int:
        return self.store.get_int(METER_VALUES_SAMPLE_INTERVAL)

    def start_meter_loop(self, repeat: Optional[int] = None) -> bool:
        interval = self._sample_interval()
        if interval <= 0:
            logging.info("MeterValuesSampleInterval is 0, periodic sampling disabled")
            return False
        self.meter_loop.start(interval, self.settings.meter_send_times if repeat is None else repeat)
        return True

    def start_data_transfer_loop(self, repeat: Optional[int] = None) -> bool:
        interval = self._sample_interval()
        if interval <= 0:
            logging.info("MeterValuesSampleInterval is 0, DataTransfer loop not started")
            return False
        self.data_transfer_loop.start(interval, self.settings.meter_send_times if repeat is None else repeat)
        return True

    # -------- result handlers --------

    async def _on_heartbeat_conf(self, payload: dict) -> None:
        logging.debug(f"Heartbeat acknowledged, server time {payload.get('currentTime')}")

    async def _on_authorize_conf(self, payload: dict) -> None:
        status = (payload.get("idTagInfo") or {}).get("status")
        logging.info(f"Authorize result for {self.id_tag}: {status}")

    async def _on_start_conf(self, payload: dict) -> None:
        status = (payload.get("idTagInfo") or {}).get("status")
        if status is not None and status != "Accepted":
            logging.warning(f"StartTransaction idTag status {status}")
        tx_id = self.tx.confirm(payload.get("transactionId"))
        if tx_id is not None:
            self._display("transaction_id", tx_id)

    async def _on_stop_conf(self, payload: dict) -> None:
        status = (payload.get("idTagInfo") or {}).get("status")
        logging.info(f"StopTransaction acknowledged (idTag status {status})")

    async def _on_data_transfer_conf(self, payload: dict) -> None:
        logging.info(f"DataTransfer status {payload.get('status')}")

    # -------- introspection --------

    def snapshot(self) -> dict:
        pending = self.dispatcher.pending
        return {
            "state": self.state,
            "session": self.session.token if self.session else None,
            "pending_action": pending.action if pending else None,
            "transaction": {
                "state": self.tx.state,
                "transaction_id": self.tx.transaction_id,
                "confirmed": self.tx.confirmed,
                "connector_id": self.tx.connector_id,
                "id_tag": self.tx.id_tag,
                "locked": self.tx.locked,
                "soc": self.tx.soc,
            },
            "meter_wh": self.meter_wh,
            "id_tag": self.id_tag,
            "schedulers": {
                task.name: {"running": task.running, "period": task.period, "fired": task.fired}
                for task in (self.heartbeat, self.meter_loop, self.data_transfer_loop)
            },
        }
