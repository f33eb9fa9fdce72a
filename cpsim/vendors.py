"""Vendor specific shapes for the SoC DataTransfer payload."""
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

SoCBuilder = Callable[[float, Optional[str]], dict]

DEFAULT_VENDOR = "Generic"
SOC_BUILDERS: Dict[str, SoCBuilder] = {}


def soc_builder(vendor_id: str):
    def register(func: SoCBuilder) -> SoCBuilder:
        SOC_BUILDERS[vendor_id] = func
        return func
    return register


def build_soc_data(vendor_id: str, soc: float, id_tag: Optional[str] = None) -> dict:
    builder = SOC_BUILDERS.get(vendor_id, SOC_BUILDERS[DEFAULT_VENDOR])
    return builder(soc, id_tag)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@soc_builder(DEFAULT_VENDOR)
def generic(soc, id_tag=None):
    return {"soc": round(soc), "timestamp": _now()}


@soc_builder("ABB")
def abb(soc, id_tag=None):
    return {"soc": round(soc), "timestamp": _now(), "chargingState": "Charging"}


@soc_builder("Alpitronic")
def alpitronic(soc, id_tag=None):
    return {"batteryLevel": round(soc), "vehicleId": id_tag, "timestamp": _now()}


@soc_builder("Siemens")
def siemens(soc, id_tag=None):
    return {"stateOfCharge": {"value": round(soc), "unit": "%"}, "timestamp": _now()}


@soc_builder("EVBox")
def evbox(soc, id_tag=None):
    return {"vehicle": {"soc": round(soc), "idTag": id_tag}, "timestamp": _now()}
