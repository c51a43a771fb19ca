"""对外 API 服务模块。

提供简化的函数接口供上层应用（命令行、GUI 等）调用。
"""

from typing import Any, Callable, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import PersistenceError
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import (
    JsonCredentialStore,
    JsonHistoryStore,
    JsonKeyValueStore,
)
from chat_core.providers.completions_client import CompletionsClient
from chat_core.session.engine import SessionEngine


AUTH_FAILED_MESSAGE = "认证失败，API Key 无效。请重新输入。"


_engine: Optional[SessionEngine] = None


def get_default_engine() -> SessionEngine:
    """获取默认的 SessionEngine 实例（单例）。

    若本地尚无凭据而配置中提供了 api_key，则先导入该凭据。
    """
    global _engine
    if _engine is None:
        kv = JsonKeyValueStore(root=settings.storage_root)
        credentials = JsonCredentialStore(kv, key=settings.credential_key)
        history = JsonHistoryStore(kv, key=settings.history_key)
        if settings.api_key and not credentials.load():
            try:
                credentials.save(settings.api_key)
            except PersistenceError as e:
                logger.warning("Failed to import configured API key", extra={"extra": {"error": e.message}})
        _engine = SessionEngine(
            transport=CompletionsClient(credentials, settings),
            credentials=credentials,
            history_store=history,
            cfg=settings,
        )
    return _engine


def reset_default_engine() -> None:
    global _engine
    _engine = None


def has_api_key() -> bool:
    return get_default_engine().has_credential


def save_api_key(key: str) -> None:
    """保存 API Key。

    Raises:
        PreconditionViolation: key 为空或当前有请求进行中。
        PersistenceError: 写入失败。
    """
    get_default_engine().set_credential(key)


def clear_api_key() -> None:
    get_default_engine().clear_credential()


def clear_history() -> None:
    get_default_engine().clear_history()


def get_history() -> List[Dict[str, Any]]:
    """返回会话历史，每项为 {role, content}。"""
    return [m.to_payload() for m in get_default_engine().history]


def run_chat(
    user_input: str,
    on_partial: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """运行一轮流式对话。

    Args:
        user_input: 用户输入内容
        on_partial: 可选回调，每收到一个增量时以“当前完整回复”调用

    Returns:
        包含 status（ok / auth_required / error）、reply、error 的字典

    Raises:
        PreconditionViolation: 空输入、缺少凭据或已有请求进行中
    """
    engine = get_default_engine()
    last = None
    for event in engine.submit(user_input):
        if event.kind == "assistant_partial" and on_partial is not None:
            on_partial(event.text)
        last = event

    if last is not None and last.kind == "assistant_final":
        return {"status": "ok", "reply": last.text, "error": None}
    if last is not None and last.kind == "auth_required":
        return {"status": "auth_required", "reply": None, "error": AUTH_FAILED_MESSAGE}
    cause = last.text if last is not None else "unknown error"
    return {
        "status": "error",
        "reply": None,
        "error": f"出错了: {cause}。请检查您的 API Key 是否正确。",
    }
