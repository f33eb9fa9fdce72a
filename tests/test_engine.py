import asyncio
import json
import time

import pytest

from cpsim.errors import AlreadyOperational, NoActiveTransaction, NotConnected, TransactionInProgress
from cpsim.state_machine import ConnectionState, TransactionState

from conftest import wait_for


@pytest.mark.asyncio
async def test_boot_then_available_for_each_connector(connected):
    transport = connected.transports[-1]
    assert transport.url == "ws://csms.test/ocpp/CP1"
    assert transport.subprotocols == ["ocpp1.6", "ocpp1.5"]
    assert transport.actions()[0] == "BootNotification"

    boot = transport.calls("BootNotification")[0]
    assert boot["chargePointVendor"] == connected.settings.cp_vendor
    assert boot["chargePointModel"] == connected.settings.cp_model

    statuses = transport.calls("StatusNotification")
    assert [s["connectorId"] for s in statuses] == [1, 2]
    assert {s["status"] for s in statuses} == {"Available"}
    assert connected.state == ConnectionState.OPERATIONAL
    assert connected.heartbeat.running
    assert connected.heartbeat.period == 300


@pytest.mark.asyncio
async def test_boot_without_interval_uses_configured_heartbeat(engine, responses):
    responses["BootNotification"] = {"status": "Accepted", "currentTime": "now", "interval": 0}
    await engine.connect()
    await wait_for(lambda: engine.heartbeat.running)
    assert engine.heartbeat.period == 60


@pytest.mark.asyncio
async def test_new_session_token_per_connect(engine):
    first = await engine.connect()
    assert len(first.token) == 36 and first.token.isalnum()
    await engine.disconnect()
    second = await engine.connect()
    assert second.token != first.token


@pytest.mark.asyncio
async def test_connect_twice_rejected(connected):
    with pytest.raises(AlreadyOperational):
        await connected.connect()


@pytest.mark.asyncio
async def test_start_locks_with_provisional_id_before_reply(connected, responses):
    responses["StartTransaction"] = None
    transport = connected.transports[-1]

    tx_id = await connected.start_transaction()
    assert tx_id == 1001
    assert connected.tx.locked
    assert connected.tx.state == TransactionState.STARTING
    start = transport.calls("StartTransaction")[0]
    assert start == {
        "connectorId": 1,
        "idTag": "LOCAL_TAG",
        "meterStart": 0,
        "timestamp": start["timestamp"],
    }

    await transport.reply("StartTransaction", {"transactionId": 0, "idTagInfo": {"status": "Accepted"}})
    assert connected.tx.transaction_id == 1001
    assert connected.tx.state == TransactionState.CHARGING


@pytest.mark.asyncio
async def test_server_id_replaces_provisional_then_charging_status(connected):
    transport = connected.transports[-1]
    await connected.start_transaction(connector_id=2, id_tag="TAG2")
    await wait_for(lambda: connected.tx.transaction_id == 42)
    await wait_for(lambda: len(transport.calls("StatusNotification")) == 3)
    charging = transport.calls("StatusNotification")[-1]
    assert charging["connectorId"] == 2
    assert charging["status"] == "Charging"


@pytest.mark.asyncio
async def test_second_start_rejected(connected):
    await connected.start_transaction()
    with pytest.raises(TransactionInProgress):
        await connected.start_transaction()


@pytest.mark.asyncio
async def test_stop_from_idle_rejected(connected):
    with pytest.raises(NoActiveTransaction):
        await connected.stop_transaction()


@pytest.mark.asyncio
async def test_stop_while_charging(connected):
    transport = connected.transports[-1]
    await connected.start_transaction()
    await wait_for(lambda: connected.tx.state == TransactionState.CHARGING)
    connected.meter_wh = 1234

    await connected.stop_transaction()
    assert not connected.tx.locked
    stop = transport.calls("StopTransaction")[0]
    assert stop["transactionId"] == 42
    assert stop["meterStop"] == 1234
    assert stop["reason"] == "Remote"
    assert stop["idTag"] == "LOCAL_TAG"

    await wait_for(lambda: connected.tx.state == TransactionState.IDLE)
    last = transport.calls("StatusNotification")[-1]
    assert (last["connectorId"], last["status"]) == (1, "Available")
    assert connected.tx.transaction_id is None


@pytest.mark.asyncio
async def test_stop_while_starting_waits_for_server_id(connected, responses):
    responses["StartTransaction"] = None
    transport = connected.transports[-1]
    await connected.start_transaction()

    stopping = asyncio.ensure_future(connected.stop_transaction())
    await asyncio.sleep(0.02)
    assert transport.calls("StopTransaction") == []

    await transport.reply("StartTransaction", {"transactionId": 77, "idTagInfo": {"status": "Accepted"}})
    await asyncio.wait_for(stopping, 1)
    assert transport.calls("StopTransaction")[0]["transactionId"] == 77


@pytest.mark.asyncio
async def test_user_operations_need_a_connection(engine):
    with pytest.raises(NotConnected):
        await engine.start_transaction()
    with pytest.raises(NotConnected):
        await engine.authorize()
    with pytest.raises(NotConnected):
        await engine.disconnect()
    assert await engine.send_meter_values() is None
    assert await engine.send_heartbeat() is None


@pytest.mark.asyncio
async def test_meter_values_carry_transaction_and_soc(connected):
    connected.settings.enable_soc = True
    transport = connected.transports[-1]
    await connected.start_transaction()
    await wait_for(lambda: connected.tx.confirmed)
    connected.meter_wh = 500

    await connected.send_meter_values()
    payload = transport.calls("MeterValues")[-1]
    assert payload["connectorId"] == 1
    assert payload["transactionId"] == 42
    sampled = {v["measurand"]: v for v in payload["meterValue"][0]["sampledValue"]}
    assert sampled["Energy.Active.Import.Register"]["value"] == "500"
    assert sampled["Energy.Active.Import.Register"]["unit"] == "Wh"
    assert sampled["SoC"]["value"] == str(round(25.5))
    assert sampled["SoC"]["unit"] == "Percent"


@pytest.mark.asyncio
async def test_meter_values_without_transaction(connected):
    transport = connected.transports[-1]
    await connected.send_meter_values()
    payload = transport.calls("MeterValues")[-1]
    assert "transactionId" not in payload
    measurands = [v["measurand"] for v in payload["meterValue"][0]["sampledValue"]]
    assert "SoC" not in measurands


@pytest.mark.asyncio
async def test_meter_loop_sends_repeat_times(connected):
    transport = connected.transports[-1]
    connected.store.change("MeterValuesSampleInterval", "1")
    assert connected.start_meter_loop(repeat=3)
    # speed the loop up for the test
    connected.meter_loop.restart(0.01, 3)
    await wait_for(lambda: not connected.meter_loop.running)
    await wait_for(lambda: connected.dispatcher.pending is None)
    assert len(transport.calls("MeterValues")) == 3
    assert connected.meter_wh == 30


@pytest.mark.asyncio
async def test_sample_interval_change_restarts_meter_loop(connected):
    connected.start_meter_loop(repeat=5)
    assert connected.meter_loop.period == 1

    connected.change_configuration("MeterValuesSampleInterval", "7")
    assert connected.meter_loop.running
    assert connected.meter_loop.period == 7
    assert connected.meter_loop.repeat == 5

    connected.change_configuration("MeterValuesSampleInterval", "0")
    assert not connected.meter_loop.running
    assert connected.start_meter_loop() is False


@pytest.mark.asyncio
async def test_data_transfer_needs_charging_and_flag(connected):
    transport = connected.transports[-1]
    assert await connected.send_data_transfer_soc() is None

    await connected.start_transaction()
    assert await connected.send_data_transfer_soc() is None

    connected.settings.enable_data_transfer = True
    connected.settings.vendor_id = "Siemens"
    await wait_for(lambda: connected.dispatcher.pending is None)
    await connected.send_data_transfer_soc()
    payload = transport.calls("DataTransfer")[-1]
    assert payload["vendorId"] == "Siemens"
    assert payload["messageId"] == "SoCData"
    assert json.loads(payload["data"])["stateOfCharge"] == {"value": round(25.5), "unit": "%"}


@pytest.mark.asyncio
async def test_disconnect_tears_everything_down(connected):
    transport = connected.transports[-1]
    await connected.start_transaction()
    connected.start_meter_loop()

    await connected.disconnect()
    assert transport.closed_with == 3001
    assert connected.state == ConnectionState.DISCONNECTED
    assert connected.session is None
    assert not connected.heartbeat.running
    assert not connected.meter_loop.running
    assert connected.dispatcher.pending is None
    assert connected.tx.state == TransactionState.IDLE
    assert not connected.tx.locked


@pytest.mark.asyncio
async def test_abnormal_close_tears_down(connected):
    await connected.transports[-1].drop(1006)
    assert connected.state == ConnectionState.DISCONNECTED
    assert not connected.heartbeat.running


@pytest.mark.asyncio
async def test_stale_session_callbacks_ignored(connected):
    old = connected.transports[-1]
    await connected.disconnect()
    await connected.connect()
    new = connected.transports[-1]
    assert new is not old

    await old.drop(1006)
    assert connected.state == ConnectionState.OPERATIONAL


@pytest.mark.asyncio
async def test_display_hook_receives_updates(engine):
    seen = []
    engine.on_display = lambda name, value: seen.append((name, value))
    await engine.connect()
    await wait_for(lambda: ("connector_status", {"connector_id": 2, "status": "Available"}) in seen)
    assert ("connection_state", "Operational") in seen

    await engine.start_transaction()
    assert ("transaction_id", 1001) in seen
    await wait_for(lambda: ("transaction_id", 42) in seen)


@pytest.mark.asyncio
async def test_boot_reports_meter_identity(connected):
    boot = connected.transports[-1].calls("BootNotification")[0]
    assert boot["meterType"] == connected.settings.meter_type
    assert boot["meterSerialNumber"] == connected.settings.meter_serial


@pytest.mark.asyncio
async def test_meter_loop_fires_at_least_one_period_apart(connected):
    transport = connected.transports[-1]
    connected.start_meter_loop(repeat=3)
    connected.meter_loop.restart(0.05, 3)
    await wait_for(lambda: not connected.meter_loop.running)

    times = [at for message, at in zip(transport.sent, transport.sent_at)
             if message[0] == 2 and message[2] == "MeterValues"]
    assert len(times) == 3
    resolution = time.get_clock_info("monotonic").resolution
    assert all(later - earlier >= 0.05 - resolution for earlier, later in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_stop_while_starting_skips_charging_status(connected, responses):
    responses["StartTransaction"] = None
    transport = connected.transports[-1]
    await connected.start_transaction()

    stopping = asyncio.ensure_future(connected.stop_transaction())
    await asyncio.sleep(0.02)
    await transport.reply("StartTransaction", {"transactionId": 77, "idTagInfo": {"status": "Accepted"}})
    await asyncio.wait_for(stopping, 1)
    await wait_for(lambda: connected.tx.state == TransactionState.IDLE)

    statuses = [s["status"] for s in transport.calls("StatusNotification")]
    assert "Charging" not in statuses
    assert statuses[-1] == "Available"
    assert transport.actions().index("StopTransaction") > transport.actions().index("StartTransaction")


@pytest.mark.asyncio
async def test_failing_boot_handling_keeps_connection(engine, responses):
    engine.settings.heartbeat_sec = 0
    responses["BootNotification"] = {"status": "Accepted", "currentTime": "now"}
    await engine.connect()
    transport = engine.transports[-1]
    await wait_for(lambda: transport.calls("BootNotification") and engine.dispatcher.pending is None)
    await asyncio.sleep(0.02)
    assert engine.state == ConnectionState.OPERATIONAL
    assert transport.closed_with is None
    assert not engine.heartbeat.running
