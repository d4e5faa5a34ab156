"""
Base models for Jupyter kernel protocol messages.

Every message on the wire has the same envelope: header, parent_header, metadata, content and
the channel it travelled on. Binary buffers ride alongside the JSON body and are never part of
the JSON serialization.

Concrete message classes live in channels/<channel>.py and override `channel` and `msg_type`
with Literals so they can be used in discriminated unions (see discriminators.py).
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

PROTOCOL_VERSION = "5.3"


class Header(BaseModel):
    # Kernels sometimes add their own keys (e.g. subshell_id), keep them so a parent_header can
    # echo the request header verbatim
    model_config = ConfigDict(extra="allow")

    msg_id: str
    msg_type: str
    username: str
    session: str
    version: str
    date: str


class ContentBase(BaseModel):
    # Content is lenient on purpose: error replies carry ename/evalue/traceback instead of the
    # usual fields, and kernels are free to add keys.
    model_config = ConfigDict(extra="allow")


class BaseMessage(BaseModel):
    header: Header
    parent_header: Optional[Header] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    content: Any = Field(default_factory=dict)  # override in subclasses to be a content model
    channel: str  # override in channel base classes to be Literal
    msg_type: Optional[str] = None  # derived from header, override in subclasses to be Literal
    buffers: List[bytes] = Field(default_factory=list)

    @field_validator("parent_header", mode="before")
    @classmethod
    def empty_parent_header(cls, v):
        """The wire uses {} for "no parent"."""
        if v == {}:
            return None
        return v

    @field_serializer("parent_header")
    def serialize_parent_header(self, v: Optional[Header]):
        if v is None:
            return {}
        return v.model_dump()

    @model_validator(mode="after")
    def set_msg_type(self):
        self.msg_type = self.header.msg_type
        return self

    @property
    def msg_id(self) -> str:
        return self.header.msg_id

    @property
    def parent_msg_id(self) -> Optional[str]:
        if self.parent_header is None:
            return None
        return self.parent_header.msg_id


class LooseHeader(BaseModel):
    model_config = ConfigDict(extra="allow")

    msg_id: Optional[str] = None
    msg_type: Optional[str] = None
    username: Optional[str] = None
    session: Optional[str] = None
    version: Optional[str] = None
    date: Optional[str] = None


class RawMessage(BaseMessage):
    """
    A message whose envelope doesn't validate, e.g. a parent_header with only a session in it.
    Kept so it can still be observed (any_message / unhandled_message), never routed to a
    future.
    """

    header: LooseHeader
    parent_header: Optional[LooseHeader] = None
    metadata: Any = Field(default_factory=dict)


class ShellMessage(BaseMessage):
    channel: Literal["shell"] = "shell"


class IOPubMessage(BaseMessage):
    channel: Literal["iopub"] = "iopub"


class StdinMessage(BaseMessage):
    channel: Literal["stdin"] = "stdin"


class ControlMessage(BaseMessage):
    channel: Literal["control"] = "control"


class ReplyContent(ContentBase):
    # Every reply has a status; 'error' replies add ename / evalue / traceback
    status: str = "ok"
    ename: Optional[str] = None
    evalue: Optional[str] = None
    traceback: Optional[List[str]] = None
