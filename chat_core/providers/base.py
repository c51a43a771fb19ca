"""Transport 抽象接口。

SessionEngine 不直接依赖 HTTP 库，而是依赖此协议：

- TransportClient.send(messages) 发出一次请求，返回 StreamReader。
- StreamReader 按到达顺序给出文本块，交由 StreamDecoder 解析。

测试中可以用内存实现替换真实的 HTTP 客户端。
"""

from typing import Iterator, Optional, Protocol, Sequence

from chat_core.domain.models import ChatMessage
from chat_core.session.cancel import CancelToken


class StreamReader(Protocol):
    def iter_text(self) -> Iterator[str]:
        """逐块产出响应体文本；读取失败抛出 TransportError 子类。"""

        ...

    def close(self) -> None:
        ...


class TransportClient(Protocol):
    """流式对话接口的客户端协议。

    send 在拿到响应头后返回；401 抛出 AuthenticationError，
    其他非成功状态抛出 TransportError。
    """

    def send(
        self,
        messages: Sequence[ChatMessage],
        cancel_token: Optional[CancelToken] = None,
    ) -> StreamReader:
        ...
