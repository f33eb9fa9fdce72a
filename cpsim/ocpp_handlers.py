import inspect
import logging
from dataclasses import asdict
from typing import Callable, Optional, Tuple, Union

from ocpp import exceptions
from ocpp.charge_point import camel_to_snake_case, snake_to_camel_case
from ocpp.messages import Call, CallError, CallResult
from ocpp.routing import after, create_route_map, on
from ocpp.v16 import call_result
from ocpp.v16.enums import (
    Action,
    ConfigurationStatus,
    MessageTrigger,
    RemoteStartStopStatus,
    ResetStatus,
    TriggerMessageStatus,
)

from .errors import ConfigRejected, UnsupportedAction

# alternative payload field names some central systems send
PAYLOAD_ALIASES = {
    Action.get_configuration: {"keys": "key"},
}


def decode_request(action: str, payload) -> dict:
    """Turn an inbound Call payload into handler keyword arguments."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise exceptions.ProtocolError(description=f"{action} payload must be an object")
    kwargs = camel_to_snake_case(payload)
    for alias, name in PAYLOAD_ALIASES.get(action, {}).items():
        if alias in kwargs:
            value = kwargs.pop(alias)
            kwargs.setdefault(name, value)
    return kwargs


class RemoteCommandHandler:
    """Answers CSMS -> charge point calls.

    ``@on`` handlers build the reply; ``@after`` handlers run once the reply
    has been sent, as tasks owned by the engine.
    """

    def __init__(self, engine):
        self.engine = engine
        self.route_map = create_route_map(self)

    async def handle_call(self, message: Call) -> Tuple[Union[CallResult, CallError], Optional[Callable[[], None]]]:
        try:
            handlers = self.route_map[message.action]
            handler = handlers["_on_action"]
        except KeyError:
            logging.warning(f"Unsupported action {message.action}")
            error = exceptions.NotImplementedError(description="Action not supported by simulator")
            return message.create_call_error(error), None

        try:
            kwargs = decode_request(message.action, message.payload)
            response = handler(**kwargs)
            if inspect.isawaitable(response):
                response = await response
        except UnsupportedAction as e:
            logging.warning(f"{message.action} not supported: {e}")
            return message.create_call_error(exceptions.NotImplementedError(description=str(e))), None
        except exceptions.OCPPError as e:
            logging.warning(f"{message.action} answered with {e.code}: {e.description}")
            return message.create_call_error(e), None
        except Exception as e:
            logging.exception(f"{message.action} handler failed")
            return message.create_call_error(e), None

        reply = message.create_call_result(snake_to_camel_case(asdict(response)))
        after_handler = handlers.get("_after_action")
        if after_handler is None:
            return reply, None
        return reply, lambda: self.engine.spawn(after_handler(**kwargs), name=f"after-{message.action}")

    # ====== CSMS -> EVSE ======

    @on(Action.remote_start_transaction)
    async def on_remote_start(self, id_tag=None, connector_id=None, **kwargs):
        return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_start_transaction)
    async def after_remote_start(self, id_tag=None, connector_id=None, **kwargs):
        await self.engine.remote_start(id_tag=id_tag, connector_id=connector_id)

    @on(Action.remote_stop_transaction)
    async def on_remote_stop(self, transaction_id=None, **kwargs):
        return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_stop_transaction)
    async def after_remote_stop(self, transaction_id=None, **kwargs):
        await self.engine.remote_stop(transaction_id)

    @on(Action.reset)
    async def on_reset(self, type=None, **kwargs):
        logging.info(f"Reset requested (type={type})")
        return call_result.Reset(status=ResetStatus.accepted)

    @after(Action.reset)
    async def after_reset(self, **kwargs):
        await self.engine.reset()

    @on(Action.unlock_connector)
    async def on_unlock_connector(self, connector_id=None, **kwargs):
        # nothing physical to unlock; the simulator always reports success
        logging.info(f"UnlockConnector connector={connector_id}")
        return call_result.UnlockConnector(status="Accepted")

    @on(Action.get_configuration)
    async def on_get_configuration(self, key=None, **kwargs):
        if isinstance(key, str):
            key = [key]
        known, unknown = self.engine.store.lookup(key)
        logging.info(f"GetConfiguration: {len(known)} key(s), unknown={unknown}")
        return call_result.GetConfiguration(
            configuration_key=[entry.to_ocpp() for entry in known],
            unknown_key=unknown,
        )

    @on(Action.change_configuration)
    async def on_change_configuration(self, key=None, value=None, **kwargs):
        try:
            self.engine.change_configuration(key, value)
        except ConfigRejected as e:
            logging.warning(f"ChangeConfiguration {key}={value!r} rejected: {e}")
            return call_result.ChangeConfiguration(status=ConfigurationStatus.rejected)
        return call_result.ChangeConfiguration(status=ConfigurationStatus.accepted)

    @on(Action.trigger_message)
    async def on_trigger_message(self, requested_message=None, connector_id=None, **kwargs):
        if requested_message != MessageTrigger.meter_values:
            raise UnsupportedAction(f"TriggerMessage for {requested_message} not supported")
        return call_result.TriggerMessage(status=TriggerMessageStatus.accepted)

    @after(Action.trigger_message)
    async def after_trigger_message(self, **kwargs):
        await self.engine.send_meter_values()
