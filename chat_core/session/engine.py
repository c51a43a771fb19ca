"""会话引擎：管理单个会话与单个进行中请求的完整生命周期。

状态机::

    IDLE --submit--> SENDING --拿到响应流--> STREAMING --完成--> IDLE
                        |                        |
                        +--------> ERROR <-------+
                                     |
                                     +--> IDLE

- 用户消息在发送前写入历史并持久化，请求失败也不会丢失输入。
- 流式过程中只更新内存中的助手占位消息并发出 assistant_partial 事件，
  不做持久化；完成后才写入历史。
- 401 时清除凭据并发出 auth_required；其他失败发出 error，
  历史中保留用户消息但不追加助手消息。
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    AuthenticationError,
    BusinessError,
    PersistenceError,
    PreconditionViolation,
    StreamCancelledError,
)
from chat_core.domain.models import ChatMessage, SessionEvent
from chat_core.domain.storage import CredentialStore, HistoryStore
from chat_core.infrastructure.logging.logger import get_logger
from chat_core.providers.base import StreamReader, TransportClient
from chat_core.session.cancel import CancelToken
from chat_core.streaming.decoder import StreamDecoder


logger = get_logger("session")


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


class SessionListener:
    """事件回调基类，子类按需覆盖；所有事件同样会由 submit 的迭代器产出。"""

    def on_user_message_appended(self, message: ChatMessage) -> None:
        pass

    def on_assistant_partial(self, message_id: str, text: str) -> None:
        pass

    def on_assistant_finalized(self, message: ChatMessage) -> None:
        pass

    def on_auth_required(self) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class TurnEvents:
    """submit() 返回的事件迭代器。

    生成器在第一次 next() 之前被关闭时不会执行其 finally，
    因此未开始就 close()（或被回收）的轮次由 on_unstarted_close 复位会话。
    """

    def __init__(self, events: Iterator[SessionEvent], on_unstarted_close: Callable[[], None]):
        self._events = events
        self._on_unstarted_close = on_unstarted_close
        self._started = False
        self._closed = False

    def __iter__(self) -> "TurnEvents":
        return self

    def __next__(self) -> SessionEvent:
        if self._closed:
            raise StopIteration
        self._started = True
        return next(self._events)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._events.close()
        if not self._started:
            self._on_unstarted_close()

    def __del__(self) -> None:
        self.close()


class SessionEngine:
    """单会话流式对话引擎。

    依赖通过构造函数注入，便于测试时替换为内存实现：

    - transport: TransportClient，负责发起请求并返回 StreamReader。
    - credentials: CredentialStore，保存 API Key。
    - history_store: HistoryStore，保存会话历史。
    """

    def __init__(
        self,
        transport: TransportClient,
        credentials: CredentialStore,
        history_store: HistoryStore,
        cfg=settings,
        listeners: Optional[Iterable[SessionListener]] = None,
    ):
        self._transport = transport
        self._credentials = credentials
        self._history_store = history_store
        self._settings = cfg
        self._listeners: List[SessionListener] = list(listeners or [])
        self._history: List[ChatMessage] = list(history_store.load())
        self._state = SessionState.IDLE
        self._cancel_token: Optional[CancelToken] = None
        self._placeholder: Optional[ChatMessage] = None
        self._placeholder_id: Optional[str] = None

    # ---- 状态查询 ----

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> List[ChatMessage]:
        return [ChatMessage(role=m.role, content=m.content) for m in self._history]

    @property
    def pending_reply(self) -> Optional[str]:
        """进行中的助手回复（未持久化），无请求时为 None。"""

        return self._placeholder.content if self._placeholder is not None else None

    @property
    def has_credential(self) -> bool:
        return bool(self._credentials.load())

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        self._listeners.remove(listener)

    # ---- 凭据与历史 ----

    def set_credential(self, value: str) -> None:
        self._require_idle()
        key = (value or "").strip()
        if not key:
            raise PreconditionViolation(code="EMPTY_API_KEY", message="API key must not be empty")
        self._credentials.save(key)
        logger.info("Credential saved")

    def clear_credential(self) -> None:
        self._credentials.clear()
        logger.info("Credential cleared")

    def clear_history(self) -> None:
        self._require_idle()
        self._history = []
        self._history_store.clear()
        logger.info("History cleared")

    # ---- 对话 ----

    def submit(self, text: str, cancel_token: Optional[CancelToken] = None) -> "TurnEvents":
        """提交一条用户消息，返回驱动本轮对话的事件迭代器。

        前置条件在调用时立即检查，不满足时抛出 PreconditionViolation 且不修改任何状态。
        通过检查后用户消息立即写入历史；调用方需要迭代返回值直到结束，
        中途停止迭代（关闭迭代器）视为取消本轮请求。
        """

        self._require_idle()
        if not self.has_credential:
            raise PreconditionViolation(code="MISSING_API_KEY", message="No API key found")
        content = (text or "").strip()
        if not content:
            raise PreconditionViolation(code="EMPTY_MESSAGE", message="Message must not be empty")

        user_message = ChatMessage(role="user", content=content)
        self._history.append(user_message)
        self._persist_history()
        self._state = SessionState.SENDING
        self._cancel_token = cancel_token or CancelToken()
        log_ctx = {"turn_id": f"t-{uuid4().hex}", "history_size": len(self._history)}
        self._log(logging.INFO, "User message committed", log_ctx)

        first = SessionEvent(kind="user_message", message=user_message)
        return TurnEvents(
            self._run_turn(first, self._cancel_token, log_ctx),
            on_unstarted_close=lambda: self._abandon_unstarted(log_ctx),
        )

    def send(self, text: str, cancel_token: Optional[CancelToken] = None) -> SessionEvent:
        """同步跑完一轮对话，返回最后一个事件（assistant_final / auth_required / error）。"""

        events = list(self.submit(text, cancel_token=cancel_token))
        return events[-1]

    def cancel(self, reason: Optional[str] = None) -> bool:
        """取消进行中的请求；没有请求时返回 False。"""

        if self._cancel_token is None:
            return False
        self._cancel_token.cancel(reason)
        return True

    def _run_turn(
        self,
        first: SessionEvent,
        token: CancelToken,
        log_ctx: Dict[str, Any],
    ) -> Iterator[SessionEvent]:
        reader: Optional[StreamReader] = None
        outcome: Optional[SessionEvent] = None
        abandoned = False
        try:
            yield self._dispatch(first)
            messages = self._outgoing_messages()
            self._log(logging.INFO, "Sending request", log_ctx, message_count=len(messages))
            reader = self._transport.send(messages, cancel_token=token)
            token.raise_if_cancelled()

            self._state = SessionState.STREAMING
            self._placeholder_id = f"m-{uuid4().hex}"
            self._placeholder = ChatMessage(role="assistant", content="")
            decoder = StreamDecoder()
            for chunk in reader.iter_text():
                token.raise_if_cancelled()
                for fragment in decoder.consume(chunk):
                    self._placeholder.content = fragment.text
                    yield self._partial_event(self._placeholder.content)

            final_text = decoder.finalize()
            if final_text != self._placeholder.content:
                self._placeholder.content = final_text
                yield self._partial_event(self._placeholder.content)

            assistant_message = ChatMessage(role="assistant", content=final_text)
            self._history.append(assistant_message)
            self._persist_history()
            self._log(
                logging.INFO,
                "Assistant message stored",
                log_ctx,
                message_id=self._placeholder_id,
                length=len(final_text),
                malformed_lines=decoder.stats.malformed,
                ignored_lines=decoder.stats.ignored,
            )
            outcome = SessionEvent(
                kind="assistant_final",
                message_id=self._placeholder_id,
                text=final_text,
                message=assistant_message,
            )
        except AuthenticationError as e:
            self._state = SessionState.ERROR
            self._credentials.clear()
            self._log(logging.WARNING, "Authentication failed, credential cleared", log_ctx, error=e.message)
            outcome = SessionEvent(kind="auth_required", text=e.message, error=e)
        except StreamCancelledError as e:
            self._state = SessionState.ERROR
            self._log(logging.INFO, "Request cancelled", log_ctx, reason=e.message)
            outcome = SessionEvent(kind="error", text=e.message, error=e)
        except BusinessError as e:
            self._state = SessionState.ERROR
            self._log(logging.ERROR, "Request failed", log_ctx, code=e.code, error=e.message)
            outcome = SessionEvent(kind="error", text=e.message, error=e)
        except GeneratorExit:
            abandoned = True
            raise
        finally:
            if reader is not None:
                reader.close()
            self._reset_turn()
            if abandoned:
                self._notify_abandoned(log_ctx)

        if outcome is not None:
            yield self._dispatch(outcome)

    def _abandon_unstarted(self, log_ctx: Dict[str, Any]) -> None:
        self._reset_turn()
        self._notify_abandoned(log_ctx)

    def _notify_abandoned(self, log_ctx: Dict[str, Any]) -> None:
        self._log(logging.INFO, "Turn abandoned by consumer", log_ctx)
        error = StreamCancelledError("Turn abandoned")
        self._dispatch(SessionEvent(kind="error", text=error.message, error=error))

    def _reset_turn(self) -> None:
        self._placeholder = None
        self._placeholder_id = None
        self._cancel_token = None
        self._state = SessionState.IDLE

    # ---- 辅助方法 ----

    def _outgoing_messages(self) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        system_prompt = getattr(self._settings, "system_prompt", None)
        if system_prompt:
            messages.append(ChatMessage(role="system", content=system_prompt))
        messages.extend(self._history)
        return messages

    def _partial_event(self, text: str) -> SessionEvent:
        return self._dispatch(
            SessionEvent(
                kind="assistant_partial",
                message_id=self._placeholder_id,
                text=text,
            )
        )

    def _persist_history(self) -> None:
        try:
            self._history_store.save(self._history)
        except PersistenceError as e:
            logger.warning(
                "Failed to persist history, keeping in-memory state",
                extra={"extra": {"code": e.code, "error": e.message}},
            )

    def _dispatch(self, event: SessionEvent) -> SessionEvent:
        for listener in list(self._listeners):
            if event.kind == "user_message":
                listener.on_user_message_appended(event.message)
            elif event.kind == "assistant_partial":
                listener.on_assistant_partial(event.message_id, event.text)
            elif event.kind == "assistant_final":
                listener.on_assistant_finalized(event.message)
            elif event.kind == "auth_required":
                listener.on_auth_required()
            else:
                listener.on_error(event.text)
        return event

    def _require_idle(self) -> None:
        if self._state is not SessionState.IDLE:
            raise PreconditionViolation(
                code="REQUEST_IN_FLIGHT",
                message=f"Session is busy ({self._state.value})",
            )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
