class SimulatorError(Exception):
    """Base class for charge point simulator errors."""


class TransportNotReady(SimulatorError):
    """A message was sent while no connection is open."""


class MalformedEnvelope(SimulatorError):
    """Inbound text is not a valid OCPP envelope."""


class OrphanedResult(SimulatorError):
    """A CallResult/CallError arrived with no matching pending request."""


class ProtocolReject(SimulatorError):
    """The central system answered one of our requests with a CallError."""

    def __init__(self, action, error_code, description, details=None):
        super().__init__(f"{action} rejected: {error_code} - {description}")
        self.action = action
        self.error_code = error_code
        self.description = description
        self.details = details or {}


class ConfigRejected(SimulatorError):
    """A configuration change failed validation."""


class UnsupportedAction(SimulatorError):
    """Inbound action (or TriggerMessage target) is not supported."""


class AlreadyConnecting(SimulatorError):
    pass


class AlreadyOperational(SimulatorError):
    pass


class NotConnected(SimulatorError):
    pass


class NoActiveTransaction(SimulatorError):
    pass


class TransactionInProgress(SimulatorError):
    pass


class SchedulerRunning(SimulatorError):
    pass
