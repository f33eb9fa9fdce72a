import itertools
import logging
from typing import Optional

from .errors import NoActiveTransaction, TransactionInProgress

# first provisional id handed out is 1001, above what a test CSMS usually assigns
LOCAL_TX_SEED = 1000


class ConnectionState:
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    OPERATIONAL = "Operational"
    CLOSING = "Closing"


class TransactionState:
    IDLE = "Idle"
    STARTING = "Starting"
    CHARGING = "Charging"
    STOPPING = "Stopping"


class TransactionMachine:
    """Connector lock / charging state and the current transaction id.

    Pure bookkeeping: the engine performs the OCPP traffic around each
    transition.
    """

    def __init__(self, local_seed: int = LOCAL_TX_SEED):
        self._local_ids = itertools.count(local_seed + 1)
        self.state = TransactionState.IDLE
        self.transaction_id: Optional[int] = None
        self.confirmed = False
        self.reported = False
        self.connector_id: Optional[int] = None
        self.id_tag: Optional[str] = None
        self.locked = False
        self.soc: float = 0.0

    @property
    def active(self) -> bool:
        return self.state != TransactionState.IDLE

    def begin(self, connector_id: int, id_tag: str, starting_soc: float) -> int:
        if self.state != TransactionState.IDLE:
            raise TransactionInProgress(
                f"transaction {self.transaction_id} is {self.state.lower()}"
            )
        self.transaction_id = next(self._local_ids)
        self.confirmed = False
        self.reported = False
        self.connector_id = connector_id
        self.id_tag = id_tag
        self.locked = True
        self.soc = self._clamp(starting_soc)
        self.state = TransactionState.STARTING
        return self.transaction_id

    def confirm(self, server_id) -> Optional[int]:
        """Apply the StartTransaction.conf transaction id.

        A positive server id replaces the provisional one unless the id was
        already confirmed or already reported in a StopTransaction. Zero or
        missing keeps the provisional id.
        """
        if self.state == TransactionState.IDLE:
            logging.warning(f"StartTransaction.conf for no active transaction (server id={server_id})")
            return None
        try:
            server_id = int(server_id or 0)
        except (TypeError, ValueError):
            server_id = 0
        if server_id > 0 and not self.confirmed and not self.reported:
            self.transaction_id = server_id
            self.confirmed = True
            logging.info(f"TransactionId assigned by server: {server_id}")
        elif server_id <= 0:
            logging.warning(
                f"StartTransaction.conf without a usable transactionId; "
                f"keeping local transaction id {self.transaction_id}"
            )
        if self.state == TransactionState.STARTING:
            self.state = TransactionState.CHARGING
        return self.transaction_id

    def begin_stop(self) -> None:
        if self.state not in (TransactionState.STARTING, TransactionState.CHARGING):
            raise NoActiveTransaction(
                "no transaction to stop" if self.state == TransactionState.IDLE
                else f"transaction {self.transaction_id} already stopping"
            )
        self.locked = False
        self.state = TransactionState.STOPPING

    def report_stop(self) -> int:
        """Freeze the id that goes into StopTransaction."""
        self.reported = True
        return self.transaction_id or 0

    def finish(self) -> None:
        self.state = TransactionState.IDLE
        self.transaction_id = None
        self.confirmed = False
        self.reported = False
        self.locked = False

    def advance_soc(self, increment: float) -> float:
        self.soc = self._clamp(self.soc + increment)
        return self.soc

    def reset(self) -> None:
        self.finish()
        self.connector_id = None
        self.id_tag = None

    @staticmethod
    def _clamp(soc: float) -> float:
        return min(100.0, max(0.0, float(soc)))
