from typing import Annotated, Union

from pydantic import Field, TypeAdapter

from tether.models.messages.channels.control import ControlMessages
from tether.models.messages.channels.iopub import IOPubMessages
from tether.models.messages.channels.shell import ShellMessages
from tether.models.messages.channels.stdin import StdinMessages

# Use: KernelMessageAdapter.validate_python(<payload-as-dict>)
# The payload needs a top-level 'msg_type' key copied from the header so the second discriminator
# can pick a model, tether.codec.validate takes care of that. Payloads that don't match any
# (channel, msg_type) pair fail validation, callers may fall back to parsing as a BaseMessage.
KernelMessage = Annotated[
    Union[
        ShellMessages,
        IOPubMessages,
        StdinMessages,
        ControlMessages,
    ],
    Field(discriminator="channel"),
]

KernelMessageAdapter: TypeAdapter = TypeAdapter(KernelMessage)
