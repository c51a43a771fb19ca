"""远端接口集成层。

- base: TransportClient / StreamReader 协议。
- completions_client: 基于 httpx 的 chat/completions 流式实现。
"""

from chat_core.providers.base import StreamReader, TransportClient
from chat_core.providers.completions_client import CompletionsClient, HttpStreamReader

__all__ = ["CompletionsClient", "HttpStreamReader", "StreamReader", "TransportClient"]
