"""
The iopub channel is the kernel's broadcast channel. Every client connected to a kernel sees
every iopub message, the parent_header says which request (and which client session) caused it.

Kernel status (busy / idle / starting / restarting / dead) is also reported here, and an
execution is only finished once the idle status with a matching parent has been observed.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, field_validator

from tether.models.messages.base import ContentBase, IOPubMessage
from tether.models.messages.channels.shell import CommCloseContent, CommMsgContent, CommOpenContent


class StatusContent(ContentBase):
    execution_state: str


class Status(IOPubMessage):
    msg_type: Literal["status"] = "status"
    content: StatusContent


class StreamContent(ContentBase):
    name: str  # stdout or stderr
    text: str

    @field_validator("text", mode="before")
    @classmethod
    def multiline_text(cls, v):
        """In the event we get a list of strings, join them back together."""
        if isinstance(v, list):
            return "".join(v)
        return v


class Stream(IOPubMessage):
    msg_type: Literal["stream"] = "stream"
    content: StreamContent


class DisplayDataContent(ContentBase):
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # transient.display_id links display_data and update_display_data outputs together
    transient: Dict[str, Any] = Field(default_factory=dict)

    @property
    def display_id(self) -> Optional[str]:
        return self.transient.get("display_id")


class DisplayData(IOPubMessage):
    msg_type: Literal["display_data"] = "display_data"
    content: DisplayDataContent


class UpdateDisplayData(IOPubMessage):
    msg_type: Literal["update_display_data"] = "update_display_data"
    content: DisplayDataContent


class ExecuteInputContent(ContentBase):
    code: str
    execution_count: Optional[int] = None


class ExecuteInput(IOPubMessage):
    msg_type: Literal["execute_input"] = "execute_input"
    content: ExecuteInputContent


class ExecuteResultContent(DisplayDataContent):
    execution_count: Optional[int] = None


class ExecuteResult(IOPubMessage):
    msg_type: Literal["execute_result"] = "execute_result"
    content: ExecuteResultContent


# Errors raised by user code are data, they arrive here and in execute_reply status='error'
class ErrorContent(ContentBase):
    ename: str
    evalue: str
    traceback: List[str] = Field(default_factory=list)


class Error(IOPubMessage):
    msg_type: Literal["error"] = "error"
    content: ErrorContent


class ClearOutputContent(ContentBase):
    wait: bool = False


class ClearOutput(IOPubMessage):
    msg_type: Literal["clear_output"] = "clear_output"
    content: ClearOutputContent


class DebugEvent(IOPubMessage):
    msg_type: Literal["debug_event"] = "debug_event"
    content: ContentBase


# Comms opened / messaged / closed from the kernel side
class CommOpenEvent(IOPubMessage):
    msg_type: Literal["comm_open"] = "comm_open"
    content: CommOpenContent


class CommMsgEvent(IOPubMessage):
    msg_type: Literal["comm_msg"] = "comm_msg"
    content: CommMsgContent


class CommCloseEvent(IOPubMessage):
    msg_type: Literal["comm_close"] = "comm_close"
    content: CommCloseContent


IOPubMessages = Annotated[
    Union[
        Status,
        Stream,
        DisplayData,
        UpdateDisplayData,
        ExecuteInput,
        ExecuteResult,
        Error,
        ClearOutput,
        DebugEvent,
        CommOpenEvent,
        CommMsgEvent,
        CommCloseEvent,
    ],
    Field(discriminator="msg_type"),
]
