"""
The shell channel carries request / single-reply pairs between a client and the kernel.

1. execute_request and execute_reply
2. inspect_request and inspect_reply
3. complete_request and complete_reply
4. history_request and history_reply
5. is_complete_request and is_complete_reply
6. comm_info_request and comm_info_reply
7. kernel_info_request and kernel_info_reply
8. comm_open / comm_msg / comm_close sent by the client (the kernel sends these on iopub)
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from tether.models.messages.base import ContentBase, ReplyContent, ShellMessage


# Execution
class ExecuteRequestContent(ContentBase):
    code: str
    silent: bool = False
    store_history: bool = True
    user_expressions: Dict[str, Any] = Field(default_factory=dict)
    allow_stdin: bool = True
    stop_on_error: bool = False


class ExecuteRequest(ShellMessage):
    msg_type: Literal["execute_request"] = "execute_request"
    content: ExecuteRequestContent


class ExecuteReplyContent(ReplyContent):
    execution_count: Optional[int] = None
    payload: List[Dict[str, Any]] = Field(default_factory=list)
    user_expressions: Dict[str, Any] = Field(default_factory=dict)


class ExecuteReply(ShellMessage):
    msg_type: Literal["execute_reply"] = "execute_reply"
    content: ExecuteReplyContent


# Introspection
class InspectRequestContent(ContentBase):
    code: str
    cursor_pos: int
    detail_level: Literal[0, 1] = 0


class InspectRequest(ShellMessage):
    msg_type: Literal["inspect_request"] = "inspect_request"
    content: InspectRequestContent


class InspectReplyContent(ReplyContent):
    found: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InspectReply(ShellMessage):
    msg_type: Literal["inspect_reply"] = "inspect_reply"
    content: InspectReplyContent


# Completion
class CompleteRequestContent(ContentBase):
    code: str
    cursor_pos: int


class CompleteRequest(ShellMessage):
    msg_type: Literal["complete_request"] = "complete_request"
    content: CompleteRequestContent


class CompleteReplyContent(ReplyContent):
    matches: List[str] = Field(default_factory=list)
    cursor_start: int = 0
    cursor_end: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CompleteReply(ShellMessage):
    msg_type: Literal["complete_reply"] = "complete_reply"
    content: CompleteReplyContent


# History
class HistoryRequestContent(ContentBase):
    output: bool = False
    raw: bool = True
    hist_access_type: Literal["range", "tail", "search"] = "tail"
    session: Optional[int] = None
    start: Optional[int] = None
    stop: Optional[int] = None
    n: Optional[int] = None
    pattern: Optional[str] = None
    unique: bool = False


class HistoryRequest(ShellMessage):
    msg_type: Literal["history_request"] = "history_request"
    content: HistoryRequestContent


class HistoryReplyContent(ReplyContent):
    # list of (session, line_number, input) or (session, line_number, (input, output))
    history: List[Any] = Field(default_factory=list)


class HistoryReply(ShellMessage):
    msg_type: Literal["history_reply"] = "history_reply"
    content: HistoryReplyContent


# Code completeness, used to decide whether a console should submit or add a newline
class IsCompleteRequestContent(ContentBase):
    code: str


class IsCompleteRequest(ShellMessage):
    msg_type: Literal["is_complete_request"] = "is_complete_request"
    content: IsCompleteRequestContent


class IsCompleteReplyContent(ReplyContent):
    status: Literal["complete", "incomplete", "invalid", "unknown"] = "unknown"
    indent: Optional[str] = None


class IsCompleteReply(ShellMessage):
    msg_type: Literal["is_complete_reply"] = "is_complete_reply"
    content: IsCompleteReplyContent


# Comm info
class CommInfoRequestContent(ContentBase):
    target_name: Optional[str] = None


class CommInfoRequest(ShellMessage):
    msg_type: Literal["comm_info_request"] = "comm_info_request"
    content: CommInfoRequestContent


class CommInfoReplyContent(ReplyContent):
    comms: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class CommInfoReply(ShellMessage):
    msg_type: Literal["comm_info_reply"] = "comm_info_reply"
    content: CommInfoReplyContent


# Kernel info, also used as the "is the websocket ready" check after connecting
class KernelInfoRequest(ShellMessage):
    msg_type: Literal["kernel_info_request"] = "kernel_info_request"
    content: ContentBase = Field(default_factory=ContentBase)


class LanguageInfo(BaseModel):
    name: str = ""
    version: Optional[str] = None
    mimetype: Optional[str] = None
    file_extension: Optional[str] = None
    pygments_lexer: Optional[str] = None
    codemirror_mode: Optional[Union[str, Dict[str, Any]]] = None
    nbconvert_exporter: Optional[str] = None


class KernelInfoReplyContent(ReplyContent):
    protocol_version: str = ""
    implementation: str = ""
    implementation_version: str = ""
    language_info: LanguageInfo = Field(default_factory=LanguageInfo)
    banner: str = ""
    help_links: List[Dict[str, str]] = Field(default_factory=list)


class KernelInfoReply(ShellMessage):
    msg_type: Literal["kernel_info_reply"] = "kernel_info_reply"
    content: KernelInfoReplyContent


# Comms opened / messaged / closed from the client side
class CommOpenContent(ContentBase):
    comm_id: str
    target_name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    target_module: Optional[str] = None


class CommMsgContent(ContentBase):
    comm_id: str
    data: Dict[str, Any] = Field(default_factory=dict)


class CommCloseContent(ContentBase):
    comm_id: str
    data: Dict[str, Any] = Field(default_factory=dict)


class CommOpenRequest(ShellMessage):
    msg_type: Literal["comm_open"] = "comm_open"
    content: CommOpenContent


class CommMsgRequest(ShellMessage):
    msg_type: Literal["comm_msg"] = "comm_msg"
    content: CommMsgContent


class CommCloseRequest(ShellMessage):
    msg_type: Literal["comm_close"] = "comm_close"
    content: CommCloseContent


ShellMessages = Annotated[
    Union[
        ExecuteRequest,
        ExecuteReply,
        InspectRequest,
        InspectReply,
        CompleteRequest,
        CompleteReply,
        HistoryRequest,
        HistoryReply,
        IsCompleteRequest,
        IsCompleteReply,
        CommInfoRequest,
        CommInfoReply,
        KernelInfoRequest,
        KernelInfoReply,
        CommOpenRequest,
        CommMsgRequest,
        CommCloseRequest,
    ],
    Field(discriminator="msg_type"),
]
