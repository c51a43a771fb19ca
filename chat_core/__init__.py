"""Chat Core 顶层包。

该包提供流式对话客户端的核心实现，
包括配置加载、领域模型、流式解码、HTTP 传输、
会话状态机与凭据/历史的本地持久化。
"""

from chat_core.domain.models import ChatMessage, SessionEvent, StreamFragment
from chat_core.session.cancel import CancelToken
from chat_core.session.engine import SessionEngine, SessionListener, SessionState
from chat_core.streaming.decoder import StreamDecoder

__all__ = [
    "CancelToken",
    "ChatMessage",
    "SessionEngine",
    "SessionEvent",
    "SessionListener",
    "SessionState",
    "StreamDecoder",
    "StreamFragment",
]
