"""
The control channel is the shell channel's administrative twin, it's read by the kernel even when
the shell channel is busy executing. Shutdown and interrupt normally go through the server's REST
endpoints instead, but kernels with interrupt_mode='message' need interrupt_request here.
"""
from typing import Annotated, Literal, Union

from pydantic import Field

from tether.models.messages.base import ContentBase, ControlMessage, ReplyContent


class ShutdownContent(ContentBase):
    restart: bool = False


class ShutdownRequest(ControlMessage):
    msg_type: Literal["shutdown_request"] = "shutdown_request"
    content: ShutdownContent


class ShutdownReplyContent(ReplyContent):
    restart: bool = False


class ShutdownReply(ControlMessage):
    msg_type: Literal["shutdown_reply"] = "shutdown_reply"
    content: ShutdownReplyContent


class InterruptRequest(ControlMessage):
    msg_type: Literal["interrupt_request"] = "interrupt_request"
    content: ContentBase = Field(default_factory=ContentBase)


class InterruptReply(ControlMessage):
    msg_type: Literal["interrupt_reply"] = "interrupt_reply"
    content: ReplyContent


class DebugRequest(ControlMessage):
    msg_type: Literal["debug_request"] = "debug_request"
    content: ContentBase


class DebugReply(ControlMessage):
    msg_type: Literal["debug_reply"] = "debug_reply"
    content: ContentBase


ControlMessages = Annotated[
    Union[
        ShutdownRequest,
        ShutdownReply,
        InterruptRequest,
        InterruptReply,
        DebugRequest,
        DebugReply,
    ],
    Field(discriminator="msg_type"),
]
