"""统一的对话与流式事件数据模型。

- ChatMessage: 一条对话消息（system/user/assistant）。
- StreamFragment: 解码器输出的单个增量，附带截至目前的完整回复。
- SessionEvent: SessionEngine 对外暴露的事件（用户消息、增量、完成、需重新认证、错误）。
"""

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from chat_core.domain.exceptions import BusinessError


# 消息角色类型（与 chat/completions 的 role 字段对应）
Role = Literal["system", "user", "assistant"]

EventKind = Literal["user_message", "assistant_partial", "assistant_final", "auth_required", "error"]


@dataclass
class ChatMessage:
    """一条对话消息，既用于请求体，也用于持久化记录。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class StreamFragment:
    """解码器产出的一个片段。

    - delta: 本行带来的增量文本（reasoning 在前，content 在后）。
    - text: 截至本片段的完整回复，调用方可直接整体重绘。
    """

    delta: str
    text: str


@dataclass
class SessionEvent:
    """一次对话轮次中对外发出的事件。

    - user_message: message 为刚写入历史的用户消息。
    - assistant_partial: message_id 为占位消息 ID，text 为当前完整回复。
    - assistant_final: message 为写入历史的助手消息。
    - auth_required: 凭据已被清除，调用方应提示重新输入。
    - error: text 为可读的失败原因，error 为原始异常。
    """

    kind: EventKind
    message_id: Optional[str] = None
    text: str = ""
    message: Optional[ChatMessage] = None
    error: Optional[BusinessError] = None
