"""
Build, validate, and (de)serialize Jupyter kernel protocol messages.

Wire framing follows the Jupyter server websocket protocol used by the kernel channels endpoint:

 - Messages without binary buffers are sent as a JSON text frame
 - Messages with buffers are sent as a binary frame laid out as
     [nbufs: uint32][offset_0: uint32]...[offset_{nbufs-1}: uint32][json][buffer_1]...
   where nbufs counts the JSON body as the first buffer and all integers are big-endian

Everything in here is pure, no I/O and no mutable state.
"""
import struct
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import orjson
from pydantic import BaseModel, ValidationError

from tether.models.messages.base import PROTOCOL_VERSION, BaseMessage, Header, RawMessage
from tether.models.messages.discriminators import KernelMessage, KernelMessageAdapter

CHANNELS = ("shell", "iopub", "stdin", "control")


class MalformedMessageError(ValueError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_message(
    msg_type: str,
    channel: str,
    content: Union[BaseModel, Dict[str, Any], None] = None,
    metadata: Optional[Dict[str, Any]] = None,
    buffers: Optional[List[bytes]] = None,
    *,
    session: str,
    username: str = "",
    msg_id: Optional[str] = None,
    parent_header: Optional[Header] = None,
) -> KernelMessage:
    """
    Create a new message with a fresh msg_id, stamped with the client session and protocol
    version. Raises MalformedMessageError if msg_type isn't a known type on {channel}.
    """
    if isinstance(content, BaseModel):
        content = content.model_dump()
    header = {
        "msg_id": msg_id or uuid.uuid4().hex,
        "msg_type": msg_type,
        "username": username,
        "session": session,
        "version": PROTOCOL_VERSION,
        "date": _now(),
    }
    data = {
        "header": header,
        "parent_header": parent_header.model_dump() if parent_header else {},
        "metadata": metadata or {},
        "content": content or {},
        "channel": channel,
        "buffers": list(buffers or []),
    }
    return validate(data)


def validate(msg: Union[BaseMessage, Dict[str, Any]]) -> KernelMessage:
    """
    Validate a message dict (or re-validate a model) into its concrete message class.

    Two-pass like any discriminated model here: copy header.msg_type to a top-level key so the
    inner discriminator can pick the model class for the channel.
    """
    if isinstance(msg, BaseMessage):
        buffers = msg.buffers
        data = msg.model_dump(exclude={"buffers", "msg_type"})
        data["buffers"] = buffers
    elif isinstance(msg, dict):
        data = dict(msg)
    else:
        raise MalformedMessageError(f"Expected a message dict or model, got {type(msg)}")

    header = data.get("header")
    if not isinstance(header, dict):
        raise MalformedMessageError("Message has no header")
    data["msg_type"] = header.get("msg_type")
    try:
        return KernelMessageAdapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessageError(
            f"Invalid {data.get('channel')}/{header.get('msg_type')} message: {e}"
        ) from e


def loads(payload: Union[str, bytes]) -> Dict[str, Any]:
    """Decode a websocket frame to a plain message dict without validating it."""
    if isinstance(payload, str):
        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            raise MalformedMessageError(f"Message is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedMessageError("Message is not a JSON object")
        data.setdefault("buffers", [])
        return data
    return _loads_binary(bytes(payload))


def _loads_binary(payload: bytes) -> Dict[str, Any]:
    if len(payload) < 8:
        raise MalformedMessageError("Binary message is too short")
    (nbufs,) = struct.unpack_from(">I", payload, 0)
    if nbufs < 1 or len(payload) < 4 * (nbufs + 1):
        raise MalformedMessageError(f"Binary message has a bad buffer count: {nbufs}")
    offsets = list(struct.unpack_from(f">{nbufs}I", payload, 4))
    offsets.append(len(payload))
    if offsets != sorted(offsets) or offsets[-1] > len(payload):
        raise MalformedMessageError("Binary message has bad buffer offsets")
    try:
        data = orjson.loads(payload[offsets[0] : offsets[1]])
    except orjson.JSONDecodeError as e:
        raise MalformedMessageError(f"Binary message body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("Binary message body is not a JSON object")
    data["buffers"] = [payload[offsets[i] : offsets[i + 1]] for i in range(1, nbufs)]
    return data


def deserialize(payload: Union[str, bytes]) -> KernelMessage:
    return validate(loads(payload))


def serialize(msg: BaseMessage) -> Union[str, bytes]:
    """Serialize a message to a JSON text frame, or a binary frame if it carries buffers."""
    data = msg.model_dump(mode="json", exclude={"buffers", "msg_type"})
    if not msg.buffers:
        return orjson.dumps(data).decode()

    parts = [orjson.dumps(data)] + [bytes(buf) for buf in msg.buffers]
    nbufs = len(parts)
    offsets = [4 * (nbufs + 1)]
    for part in parts[:-1]:
        offsets.append(offsets[-1] + len(part))
    return struct.pack(f">I{nbufs}I", nbufs, *offsets) + b"".join(parts)


def parse_frame(payload: Union[str, bytes]) -> BaseMessage:
    """
    Like deserialize, but never raises for a frame that has a header:

     - a valid envelope whose type we don't model comes back as a plain BaseMessage
     - anything else with a header object (partial parent_header, missing header fields,
       unknown channel) comes back as a RawMessage

    Only frames that aren't JSON objects or have no header raise MalformedMessageError.
    """
    data = loads(payload)
    try:
        return validate(data)
    except MalformedMessageError as e:
        if not isinstance(data.get("header"), dict):
            raise
        if data.get("channel") in CHANNELS:
            try:
                return BaseMessage.model_validate(data)
            except ValidationError:
                pass
        try:
            return RawMessage.model_validate(data)
        except ValidationError:
            raise e from None
