import argparse
import json
import os
from typing import Optional

import requests

API_BASE = os.getenv("CPSIM_API", "http://127.0.0.1:7071")


def _do_json(method: str, url: str, body: Optional[str] = None) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    resp = requests.request(method, url, data=body, headers=headers, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def connect() -> None:
    _do_json("POST", f"{API_BASE}/connect")


def disconnect() -> None:
    _do_json("POST", f"{API_BASE}/disconnect")


def start_charge(connector_id: Optional[int], id_tag: Optional[str]) -> None:
    params = []
    if connector_id is not None:
        params.append(f"connector_id={connector_id}")
    if id_tag is not None:
        params.append(f"id_tag={id_tag}")
    query = f"?{'&'.join(params)}" if params else ""
    _do_json("POST", f"{API_BASE}/start{query}")


def stop_charge() -> None:
    _do_json("POST", f"{API_BASE}/stop")


def meter_loop(action: str, repeat: Optional[int]) -> None:
    body = json.dumps({"repeat": repeat}) if action == "start" else None
    _do_json("POST", f"{API_BASE}/meter_loop/{action}", body)


def change_configuration(key: str, value: str) -> None:
    _do_json("POST", f"{API_BASE}/configuration", json.dumps({"key": key, "value": value}))


def show_state() -> None:
    _do_json("GET", f"{API_BASE}/state")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive the charge point simulator via its HTTP API")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("connect", help="open the WebSocket to the CSMS")
    sub.add_parser("disconnect", help="close the WebSocket")
    sub.add_parser("state", help="print the simulator state")

    p_start = sub.add_parser("start", help="start charging")
    p_start.add_argument("connectorId", type=int, nargs="?")
    p_start.add_argument("idTag", nargs="?")

    sub.add_parser("stop", help="stop charging")

    p_meter = sub.add_parser("meter", help="start or stop the MeterValues loop")
    p_meter.add_argument("action", choices=["start", "stop"])
    p_meter.add_argument("--repeat", type=int, default=None, help="number of sends, 0 = unlimited")

    p_conf = sub.add_parser("config", help="change a configuration key")
    p_conf.add_argument("key")
    p_conf.add_argument("value")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.cmd == "connect":
        connect()
    elif args.cmd == "disconnect":
        disconnect()
    elif args.cmd == "state":
        show_state()
    elif args.cmd == "start":
        start_charge(args.connectorId, args.idTag)
    elif args.cmd == "stop":
        stop_charge()
    elif args.cmd == "meter":
        meter_loop(args.action, args.repeat)
    elif args.cmd == "config":
        change_configuration(args.key, args.value)


if __name__ == "__main__":
    main()
