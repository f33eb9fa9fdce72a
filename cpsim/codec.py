"""OCPP-J envelope encoding.

Wraps the ``ocpp`` message classes so the rest of the simulator deals in
``Call``/``CallResult``/``CallError`` objects and plain camelCase dicts.
"""
import logging
from dataclasses import asdict
from typing import Tuple, Union

from ocpp.charge_point import remove_nones, snake_to_camel_case
from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallError, CallResult, unpack
from ocpp.v16.enums import Action

from .errors import MalformedEnvelope

Envelope = Union[Call, CallResult, CallError]

# StatusNotification.req fields allowed by OCPP 1.6; anything else makes
# some central systems answer with a FormationViolation.
STATUS_NOTIFICATION_FIELDS = ("connectorId", "status", "errorCode", "info", "timestamp")


def sanitize_payload(action: str, payload: dict) -> dict:
    if action != Action.status_notification:
        return payload
    sanitized = {k: payload[k] for k in STATUS_NOTIFICATION_FIELDS if k in payload}
    if len(sanitized) != len(payload):
        stripped = sorted(set(payload) - set(sanitized))
        logging.debug(f"Sanitized StatusNotification payload, dropped {stripped}")
    return sanitized


def to_wire(payload) -> Tuple[str, dict]:
    """Turn an ``ocpp.v16.call`` dataclass into (action, camelCase payload)."""
    action = payload.__class__.__name__
    return action, snake_to_camel_case(remove_nones(asdict(payload)))


def encode_call(unique_id: str, action: str, payload: dict) -> str:
    return Call(unique_id, action, sanitize_payload(action, payload)).to_json()


def encode_reply(message: Union[CallResult, CallError]) -> str:
    return message.to_json()


def decode(raw) -> Envelope:
    try:
        return unpack(raw)
    except OCPPError as e:
        raise MalformedEnvelope(f"{e.code}: {e.description}") from e
    except (TypeError, ValueError, KeyError, IndexError) as e:
        raise MalformedEnvelope(str(e)) from e
