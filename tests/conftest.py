import asyncio
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from cpsim.config import SimulatorConfig
from cpsim.engine import ChargePointEngine
from cpsim.state_machine import ConnectionState


def default_responses():
    now = datetime.now(timezone.utc).isoformat()
    return {
        "BootNotification": {"status": "Accepted", "currentTime": now, "interval": 300},
        "Heartbeat": {"currentTime": now},
        "StatusNotification": {},
        "Authorize": {"idTagInfo": {"status": "Accepted"}},
        "StartTransaction": {"transactionId": 42, "idTagInfo": {"status": "Accepted"}},
        "StopTransaction": {"idTagInfo": {"status": "Accepted"}},
        "MeterValues": {},
        "DataTransfer": {"status": "Accepted"},
    }


class FakeTransport:
    """In-memory stand-in for WebSocketTransport.

    Outbound calls whose action has an entry in ``responses`` are answered
    with that payload on the next loop iteration; a ``None`` entry leaves the
    call unanswered so the test can reply itself via ``reply()``.
    """

    def __init__(self, on_open, on_message, on_close, on_error, responses=None):
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error
        self.responses = responses if responses is not None else default_responses()
        self.sent = []
        self.sent_at = []
        self.url = None
        self.is_open = False
        self.closed_with = None
        self._deliveries = set()

    async def open(self, url, subprotocols, ssl=None):
        self.url = url
        self.subprotocols = subprotocols
        self.is_open = True
        await self._on_open()

    async def send(self, text):
        message = json.loads(text)
        self.sent.append(message)
        self.sent_at.append(asyncio.get_running_loop().time())
        if message[0] == 2 and self.responses.get(message[2]) is not None:
            self._schedule([3, message[1], self.responses[message[2]]])

    async def close(self, code):
        if not self.is_open:
            return
        self.is_open = False
        self.closed_with = code
        await self._on_close(code)

    def _schedule(self, message):
        task = asyncio.ensure_future(self.deliver(message))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def deliver(self, message):
        if self.is_open:
            await self._on_message(message if isinstance(message, str) else json.dumps(message))

    async def reply(self, action, payload):
        """Answer the most recent call for ``action``."""
        unique_id = self.calls_for(action)[-1][1]
        await self.deliver([3, unique_id, payload])

    async def drop(self, code=1006):
        self.is_open = False
        await self._on_close(code)

    def calls_for(self, action):
        return [m for m in self.sent if m[0] == 2 and m[2] == action]

    def calls(self, action):
        return [m[3] for m in self.calls_for(action)]

    def reply_to(self, unique_id):
        for message in self.sent:
            if message[0] in (3, 4) and message[1] == unique_id:
                return message
        return None

    def actions(self):
        return [m[2] for m in self.sent if m[0] == 2]


async def wait_for(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def settings():
    return SimulatorConfig(
        csms_url="ws://csms.test/ocpp",
        cpid="CP1",
        connectors=2,
        connector_id=1,
        id_tag="LOCAL_TAG",
        meter_start_wh=0,
        meter_increment_wh=10,
        meter_period_sec=1,
        meter_send_times=0,
        heartbeat_sec=60,
        starting_soc=25,
        soc_increment=0.5,
        enable_soc=False,
        enable_data_transfer=False,
        vendor_id="Generic",
        settle_delay_sec=0.01,
        remote_start_delay_sec=0.01,
        call_timeout_sec=0,
    )


@pytest.fixture
def responses():
    return default_responses()


@pytest_asyncio.fixture
async def engine(settings, responses):
    transports = []

    def factory(**callbacks):
        transport = FakeTransport(responses=responses, **callbacks)
        transports.append(transport)
        return transport

    eng = ChargePointEngine(settings, transport_factory=factory)
    eng.transports = transports
    yield eng
    if eng.state in (ConnectionState.CONNECTING, ConnectionState.OPERATIONAL):
        await eng.disconnect()


@pytest_asyncio.fixture
async def connected(engine):
    """An engine that has booted and sent its initial StatusNotifications."""
    await engine.connect()
    transport = engine.transports[-1]
    connectors = engine.store.get_int("NumberOfConnectors")
    await wait_for(lambda: len(transport.calls("StatusNotification")) == connectors)
    return engine
