"""流式响应解码器。

把任意切分的文本/字节块还原为有序的内容增量。远端以行协议返回::

    data: {"choices": [{"delta": {"reasoning_content": "...", "content": "..."}}]}
    data: [DONE]

网络分块与行边界无关，因此未以换行结束的尾部会留在 carryover 中，
与下一块拼接后再切分；只有完整的行才会被解析。
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from chat_core.domain.exceptions import DecodeWarning
from chat_core.domain.models import StreamFragment
from chat_core.infrastructure.logging.logger import get_logger


log = get_logger("decoder")

DATA_PREFIX = "data:"
DONE_MESSAGE = "[DONE]"
_LEADING_BREAKS = "\r\n"


@dataclass
class DecodeStats:
    """解码统计，便于排查远端返回的非预期行。"""

    lines: int = 0
    fragments: int = 0
    malformed: int = 0
    ignored: int = 0


class StreamDecoder:
    """单次请求使用的解码器，请求结束后丢弃。"""

    def __init__(self, on_warning: Optional[Callable[[DecodeWarning], None]] = None):
        self._carryover = ""
        self._accumulated = ""
        self._first_chunk_seen = False
        self._finalized = False
        self._bytes_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._on_warning = on_warning
        self.stats = DecodeStats()

    @property
    def text(self) -> str:
        return self._accumulated

    def consume(self, chunk: str | bytes) -> List[StreamFragment]:
        if self._finalized:
            raise RuntimeError("StreamDecoder already finalized")
        if isinstance(chunk, bytes):
            chunk = self._bytes_decoder.decode(chunk)
        buffer = self._carryover + chunk
        *lines, self._carryover = buffer.split("\n")
        fragments: List[StreamFragment] = []
        for line in lines:
            fragment = self._apply(line)
            if fragment is not None:
                fragments.append(fragment)
        return fragments

    def finalize(self) -> str:
        """冲刷最后一行（若有）并返回完整回复。"""

        if not self._finalized:
            tail = self._carryover + self._bytes_decoder.decode(b"", final=True)
            self._carryover = ""
            if tail.strip():
                self._apply(tail)
            self._finalized = True
        return self._accumulated

    def _apply(self, line: str) -> Optional[StreamFragment]:
        self.stats.lines += 1
        delta = self._parse_line(line)
        if not delta:
            return None
        if not self._first_chunk_seen:
            self._first_chunk_seen = True
            delta = delta.lstrip(_LEADING_BREAKS)
            if not delta:
                return None
        self._accumulated += delta
        self.stats.fragments += 1
        return StreamFragment(delta=delta, text=self._accumulated)

    def _parse_line(self, line: str) -> str:
        trimmed = line.strip()
        if not trimmed:
            return ""
        if not trimmed.startswith(DATA_PREFIX):
            # event:/id:/注释等其他行，忽略但计数
            self.stats.ignored += 1
            return ""
        data_str = trimmed[len(DATA_PREFIX):]
        if data_str.startswith(" "):
            data_str = data_str[1:]
        if data_str == DONE_MESSAGE:
            return ""
        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError as e:
            self._warn("Malformed stream payload", line=trimmed, error=str(e))
            return ""
        if not isinstance(payload, dict):
            self._warn("Stream payload is not an object", line=trimmed)
            return ""
        return self._extract(payload, trimmed)

    def _extract(self, payload: dict, line: str) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            self.stats.ignored += 1
            return ""
        delta = choices[0].get("delta")
        if delta is None:
            self.stats.ignored += 1
            return ""
        if not isinstance(delta, dict):
            self._warn("Stream delta is not an object", line=line)
            return ""
        return _as_text(delta.get("reasoning_content")) + _as_text(delta.get("content"))

    def _warn(self, message: str, line: str, error: str = "") -> None:
        self.stats.malformed += 1
        log.warning(message, extra={"extra": {"line": line[:200], "error": error}})
        if self._on_warning is not None:
            self._on_warning(DecodeWarning(code="DECODE_WARNING", message=message, line=line, error=error))


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""
