import os
import ssl
from dataclasses import dataclass, fields, replace
from typing import Optional


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


CSMS_URL = os.getenv("CSMS_URL", "ws://127.0.0.1:9000/ocpp")
# TLS certificate configuration (optional)
TLS_CA_CERT = os.getenv("TLS_CA_CERT")
TLS_CLIENT_CERT = os.getenv("TLS_CLIENT_CERT")
TLS_CLIENT_KEY = os.getenv("TLS_CLIENT_KEY")

CPID = os.getenv("CPID", "TestCP01")
CONNECTORS = int(os.getenv("CONNECTORS", "1"))
CONNECTOR_ID = int(os.getenv("CONNECTOR_ID", "1"))
ID_TAG = os.getenv("ID_TAG", "LOCAL_TAG")

METER_START_WH = int(os.getenv("METER_START_WH", "0"))
METER_INCREMENT_WH = float(os.getenv("METER_INCREMENT_WH", "1"))
METER_PERIOD_SEC = int(os.getenv("METER_PERIOD_SEC", "10"))     # MeterValuesSampleInterval
METER_SEND_TIMES = int(os.getenv("METER_SEND_TIMES", "0"))      # 0 = unlimited
SEND_HEARTBEAT_SEC = int(os.getenv("SEND_HEARTBEAT_SEC", "60")) # used when boot gives no interval

STARTING_SOC = float(os.getenv("STARTING_SOC", "25"))
SOC_INCREMENT = float(os.getenv("SOC_INCREMENT", "0.5"))
ENABLE_SOC = _flag("ENABLE_SOC", "false")
ENABLE_DATA_TRANSFER = _flag("ENABLE_DATA_TRANSFER", "false")
VENDOR_ID = os.getenv("VENDOR_ID", "Generic")

SETTLE_DELAY_SEC = float(os.getenv("SETTLE_DELAY_SEC", "0.2"))
REMOTE_START_DELAY_SEC = float(os.getenv("REMOTE_START_DELAY_SEC", "0.1"))
CALL_TIMEOUT_SEC = float(os.getenv("CALL_TIMEOUT_SEC", "0"))    # 0 = wait forever

CP_VENDOR = os.getenv("CP_VENDOR", "AVT-Company")
CP_MODEL = os.getenv("CP_MODEL", "AVT-Express")
CP_SERIAL = os.getenv("CP_SERIAL", "avt.001.13.1")
FIRMWARE_VERSION = os.getenv("FIRMWARE_VERSION", "0.9.87")
METER_TYPE = os.getenv("METER_TYPE", "AVT NQC-ACDC")
METER_SERIAL = os.getenv("METER_SERIAL", "avt.001.13.1.01")

AUTO_CONNECT = _flag("AUTO_CONNECT", "false")
HTTP_PORT = int(os.getenv("HTTP_PORT", "7071"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass
class SimulatorConfig:
    """Operator supplied settings, read by the engine as a snapshot."""

    csms_url: str = CSMS_URL
    cpid: str = CPID
    connectors: int = CONNECTORS
    connector_id: int = CONNECTOR_ID
    id_tag: str = ID_TAG
    meter_start_wh: int = METER_START_WH
    meter_increment_wh: float = METER_INCREMENT_WH
    meter_period_sec: int = METER_PERIOD_SEC
    meter_send_times: int = METER_SEND_TIMES
    heartbeat_sec: int = SEND_HEARTBEAT_SEC
    starting_soc: float = STARTING_SOC
    soc_increment: float = SOC_INCREMENT
    enable_soc: bool = ENABLE_SOC
    enable_data_transfer: bool = ENABLE_DATA_TRANSFER
    vendor_id: str = VENDOR_ID
    settle_delay_sec: float = SETTLE_DELAY_SEC
    remote_start_delay_sec: float = REMOTE_START_DELAY_SEC
    call_timeout_sec: float = CALL_TIMEOUT_SEC
    cp_vendor: str = CP_VENDOR
    cp_model: str = CP_MODEL
    cp_serial: str = CP_SERIAL
    firmware_version: str = FIRMWARE_VERSION
    meter_type: str = METER_TYPE
    meter_serial: str = METER_SERIAL
    tls_ca_cert: Optional[str] = TLS_CA_CERT
    tls_client_cert: Optional[str] = TLS_CLIENT_CERT
    tls_client_key: Optional[str] = TLS_CLIENT_KEY

    @property
    def url(self) -> str:
        return f"{self.csms_url.rstrip('/')}/{self.cpid}"

    def updated(self, **changes) -> "SimulatorConfig":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.url.startswith("wss://"):
            return None
        ctx = ssl.create_default_context(cafile=self.tls_ca_cert)
        if self.tls_client_cert:
            ctx.load_cert_chain(self.tls_client_cert, self.tls_client_key)
        return ctx
