import asyncio
import logging
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, NonNegativeFloat, NonNegativeInt, PositiveInt

from .config import AUTO_CONNECT, HTTP_PORT, LOG_LEVEL, SimulatorConfig
from .engine import ChargePointEngine
from .errors import ConfigRejected, SimulatorError

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s | %(levelname)s | %(message)s")


class ConfigurationChange(BaseModel):
    key: str
    value: str


class LoopRequest(BaseModel):
    repeat: Optional[NonNegativeInt] = None


class SettingsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    csms_url: Optional[str] = None
    cpid: Optional[str] = None
    connector_id: Optional[PositiveInt] = None
    id_tag: Optional[str] = None
    meter_increment_wh: Optional[NonNegativeFloat] = None
    meter_send_times: Optional[NonNegativeInt] = None
    heartbeat_sec: Optional[PositiveInt] = None
    starting_soc: Optional[float] = None
    soc_increment: Optional[float] = None
    enable_soc: Optional[bool] = None
    enable_data_transfer: Optional[bool] = None
    vendor_id: Optional[str] = None


def _fail(e: SimulatorError) -> Dict[str, Any]:
    return {"ok": False, "error": str(e)}


def create_app(engine: ChargePointEngine) -> FastAPI:
    app = FastAPI(title="OCPP 1.6 Charge Point Simulator")
    # latest values pushed by the engine, for display
    display: Dict[str, Any] = {"transaction_id": None, "connection_state": engine.state, "connectors": {}}

    def on_display(name: str, value: Any) -> None:
        if name == "connector_status":
            display["connectors"][value["connector_id"]] = value["status"]
        else:
            display[name] = value

    engine.on_display = on_display
    app.state.engine = engine
    app.state.display = display

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/state")
    async def state():
        return {**engine.snapshot(), "display": display}

    # -------- connection --------

    @app.post("/connect")
    async def connect():
        try:
            await engine.connect()
        except SimulatorError as e:
            return _fail(e)
        return {"ok": engine.state == "Operational", "state": engine.state}

    @app.post("/disconnect")
    async def disconnect():
        try:
            await engine.disconnect()
        except SimulatorError as e:
            return _fail(e)
        return {"ok": True, "state": engine.state}

    # -------- charge point -> CSMS --------

    @app.post("/authorize")
    async def authorize(id_tag: Optional[str] = None):
        try:
            pending = await engine.authorize(id_tag)
        except SimulatorError as e:
            return _fail(e)
        return {"ok": pending is not None}

    @app.post("/start")
    async def start(connector_id: Optional[int] = None, id_tag: Optional[str] = None):
        try:
            tx_id = await engine.start_transaction(connector_id, id_tag)
        except SimulatorError as e:
            return _fail(e)
        return {"ok": True, "transaction_id": tx_id}

    @app.post("/stop")
    async def stop():
        try:
            await engine.stop_transaction()
        except SimulatorError as e:
            return _fail(e)
        return {"ok": True}

    @app.post("/heartbeat")
    async def heartbeat():
        pending = await engine.send_heartbeat()
        return {"ok": pending is not None}

    @app.post("/meter_values")
    async def meter_values():
        pending = await engine.send_meter_values()
        return {"ok": pending is not None}

    @app.post("/status/{connector_id}")
    async def status_notification(connector_id: int, status: str = "Available", error_code: str = "NoError"):
        if not 1 <= connector_id <= engine.store.get_int("NumberOfConnectors"):
            raise HTTPException(status_code=404, detail="unknown connector")
        try:
            pending = await engine.send_status_notification(connector_id, status, error_code)
        except SimulatorError as e:
            return _fail(e)
        return {"ok": pending is not None}

    @app.post("/data_transfer")
    async def data_transfer():
        pending = await engine.send_data_transfer_soc()
        return {"ok": pending is not None}

    # -------- telemetry loops --------

    @app.post("/meter_loop/start")
    async def meter_loop_start(req: Optional[LoopRequest] = None):
        try:
            started = engine.start_meter_loop(req.repeat if req else None)
        except SimulatorError as e:
            return _fail(e)
        return {"ok": started}

    @app.post("/meter_loop/stop")
    async def meter_loop_stop():
        engine.meter_loop.stop()
        return {"ok": True}

    @app.post("/data_transfer_loop/start")
    async def data_transfer_loop_start(req: Optional[LoopRequest] = None):
        try:
            started = engine.start_data_transfer_loop(req.repeat if req else None)
        except SimulatorError as e:
            return _fail(e)
        return {"ok": started}

    @app.post("/data_transfer_loop/stop")
    async def data_transfer_loop_stop():
        engine.data_transfer_loop.stop()
        return {"ok": True}

    # -------- configuration --------

    @app.get("/configuration")
    async def configuration():
        return {"configurationKey": [entry.to_ocpp() for entry in engine.store.entries()]}

    @app.post("/configuration")
    async def change_configuration(change: ConfigurationChange):
        try:
            entry = engine.change_configuration(change.key, change.value)
        except ConfigRejected as e:
            return {"ok": False, "status": "Rejected", "error": str(e)}
        return {"ok": True, "status": "Accepted", "entry": entry.to_ocpp()}

    @app.patch("/settings")
    async def settings(patch: SettingsPatch):
        changes = patch.model_dump(exclude_none=True)
        engine.settings = engine.settings.updated(**changes)
        if "id_tag" in changes:
            engine.id_tag = changes["id_tag"]
        return {"ok": True, "changed": sorted(changes)}

    return app


engine = ChargePointEngine(SimulatorConfig())
app = create_app(engine)


async def main():
    # run the HTTP control API; connect right away when AUTO_CONNECT is set
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=HTTP_PORT, loop="asyncio", log_level="info"))
    if AUTO_CONNECT:
        engine.spawn(engine.connect(), name="auto-connect")
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
