"""
The stdin channel lets the kernel ask the client for input (input() / getpass()). Requests come
from the kernel, the client answers with input_reply. Only sent when execute_request had
allow_stdin=True.
"""
from typing import Annotated, Literal, Union

from pydantic import Field

from tether.models.messages.base import ContentBase, StdinMessage


class InputRequestContent(ContentBase):
    prompt: str = ""
    password: bool = False


class InputRequest(StdinMessage):
    msg_type: Literal["input_request"] = "input_request"
    content: InputRequestContent


class InputReplyContent(ContentBase):
    value: str
    status: str = "ok"


class InputReply(StdinMessage):
    msg_type: Literal["input_reply"] = "input_reply"
    content: InputReplyContent


StdinMessages = Annotated[Union[InputRequest, InputReply], Field(discriminator="msg_type")]
