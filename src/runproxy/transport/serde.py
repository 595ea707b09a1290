"""
This module is responsible for Serialization & Deserialization of messages
"""

import logging
import pickle
from typing import Any

import orjson
from pydantic import BaseModel

from runproxy.transport.msg import Message, MessageType, message_types

logger = logging.getLogger(__name__)

# NOTE we simply pickle the msg classes -- the channel is between two processes of the same
# installation, so there is no need for a language neutral format. The json rendition below is
# meant for consumers of the raw message stream, typically an IDE or a log


def ser_message(m: Message) -> bytes:
    return pickle.dumps(m)


def des_message(b: bytes) -> Message:
    m = pickle.loads(b)
    if type(m) not in message_types:
        raise TypeError(type(m))
    return m


def _default(o: Any) -> Any:
    if isinstance(o, BaseModel):
        return o.model_dump()
    raise TypeError(type(o))


def ser_payload(message_type: MessageType, payload: Any) -> str:
    """Json envelope of `payload`, as handed to `EventSink.on_raw_message`"""
    try:
        return orjson.dumps(
            {"message_type": message_type.value, "payload": payload},
            default=_default,
            option=orjson.OPT_NON_STR_KEYS,
        ).decode()
    except Exception as e:
        logger.exception(f"failed to serialize payload: {repr(payload)[:32]}")
        raise ValueError(f"failed to serialize payload: {repr(payload)[:32]} => {repr(e)[:32]}")


def ser_raw(m: Message) -> str:
    return ser_payload(message_types[type(m)], m)


def des_payload(raw: str) -> tuple[MessageType, dict]:
    d = orjson.loads(raw)
    return MessageType(d["message_type"]), d["payload"]
