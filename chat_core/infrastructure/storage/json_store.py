import os
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from chat_core.config.settings import settings
from chat_core.domain.exceptions import PersistenceError
from chat_core.domain.models import ChatMessage
from chat_core.domain.storage import CredentialStore, HistoryStore
from chat_core.infrastructure.logging.logger import get_logger


log = get_logger("storage")

_HISTORY_ADAPTER = TypeAdapter(List[ChatMessage])


class JsonKeyValueStore:
    """以“一个键一个文件”的方式持久化字符串值，语义类似浏览器 localStorage。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise PersistenceError(code="STORE_DECODE_ERROR", message=str(e), key=key)
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{key}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def _path(self, key: str) -> Path:
        return self._root / key


class JsonCredentialStore(CredentialStore):
    def __init__(self, kv: JsonKeyValueStore, key: Optional[str] = None):
        self._kv = kv
        self._key = key or settings.credential_key

    def load(self) -> Optional[str]:
        try:
            value = self._kv.get(self._key)
        except PersistenceError as e:
            log.warning("Failed to load credential", extra={"extra": {"code": e.code, "error": e.message}})
            return None
        return value or None

    def save(self, value: str) -> None:
        self._kv.set(self._key, value)

    def clear(self) -> None:
        try:
            self._kv.remove(self._key)
        except PersistenceError as e:
            log.warning("Failed to clear credential", extra={"extra": {"code": e.code, "error": e.message}})


class JsonHistoryStore(HistoryStore):
    """会话历史存储。

    记录格式为 ``[{"role": ..., "content": ...}, ...]`` 的 JSON 数组。
    读取时若记录损坏（非 JSON、结构不符、角色非法），视为空历史并清除该记录。
    """

    def __init__(self, kv: JsonKeyValueStore, key: Optional[str] = None):
        self._kv = kv
        self._key = key or settings.history_key

    def load(self) -> List[ChatMessage]:
        try:
            raw = self._kv.get(self._key)
        except PersistenceError as e:
            if e.code != "STORE_DECODE_ERROR":
                log.warning("Failed to load history", extra={"extra": {"code": e.code, "error": e.message}})
                return []
            return self._heal(e.message)
        if raw is None:
            return []
        try:
            return _HISTORY_ADAPTER.validate_json(raw)
        except ValidationError as e:
            return self._heal(str(e))

    def save(self, value: List[ChatMessage]) -> None:
        records = [m for m in value if m.role != "system"]
        data = _HISTORY_ADAPTER.dump_json(records).decode("utf-8")
        self._kv.set(self._key, data)

    def clear(self) -> None:
        try:
            self._kv.remove(self._key)
        except PersistenceError as e:
            log.warning("Failed to clear history", extra={"extra": {"code": e.code, "error": e.message}})

    def _heal(self, reason: str) -> List[ChatMessage]:
        log.warning("Corrupted history record cleared", extra={"extra": {"key": self._key, "error": reason[:200]}})
        self.clear()
        return []
