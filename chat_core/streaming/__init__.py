"""流式响应解码。"""

from chat_core.streaming.decoder import DecodeStats, StreamDecoder

__all__ = ["DecodeStats", "StreamDecoder"]
