"""chat/completions 流式 HTTP 客户端。

- URL: settings.api_url
- 认证: Authorization: Bearer <api_key>
- 请求体: {model, messages, stream: true, thinking: {type}}
- 响应: text/event-stream，逐行 ``data: <JSON>``，以 ``data: [DONE]`` 结束。
"""

from contextlib import ExitStack
from typing import Any, Dict, Iterator, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    AuthenticationError,
    NetworkError,
    PreconditionViolation,
    TransportError,
)
from chat_core.domain.models import ChatMessage
from chat_core.domain.storage import CredentialStore
from chat_core.infrastructure.logging.logger import get_logger
from chat_core.session.cancel import CancelToken


log = get_logger("transport")

_ERROR_BODY_LIMIT = 500


class HttpStreamReader:
    """持有一次流式响应，直到读取结束或 close()。"""

    def __init__(self, stack: ExitStack, response: Any, cancel_token: Optional[CancelToken] = None):
        self._stack = stack
        self._response = response
        self._cancel_token = cancel_token
        self.status_code = response.status_code

    def iter_text(self) -> Iterator[str]:
        self._check_cancelled()
        try:
            for chunk in self._response.iter_text():
                self._check_cancelled()
                if chunk:
                    yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise NetworkError(message=f"Stream read failed: {e}")

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> "HttpStreamReader":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def _check_cancelled(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.raise_if_cancelled()


class CompletionsClient:
    """TransportClient 的 httpx 实现。"""

    name = "completions"

    def __init__(self, credential_store: CredentialStore, cfg=settings):
        self._credentials = credential_store
        self._settings = cfg

    def send(
        self,
        messages: Sequence[ChatMessage],
        cancel_token: Optional[CancelToken] = None,
    ) -> HttpStreamReader:
        api_key = self._credentials.load()
        if not api_key:
            raise PreconditionViolation(code="MISSING_API_KEY", message="No API key found")
        payload = self._build_payload(messages)
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        stack = ExitStack()
        try:
            client = stack.enter_context(
                httpx.Client(timeout=self._settings.http_timeout, trust_env=False)
            )
            resp = stack.enter_context(
                client.stream("POST", self._settings.api_url, json=payload, headers=headers)
            )
        except httpx.RequestError as e:
            stack.close()
            raise NetworkError(message=str(e) or type(e).__name__)
        except httpx.InvalidURL as e:
            stack.close()
            raise TransportError(code="INVALID_URL", message=f"Invalid API URL: {e}")
        except BaseException:
            stack.close()
            raise

        status = resp.status_code
        if 200 <= status < 300:
            log.info(
                "Stream opened",
                extra={"extra": {"status": status, "model": self._settings.model, "message_count": len(messages)}},
            )
            return HttpStreamReader(stack, resp, cancel_token)

        try:
            detail = self._read_error_body(resp)
        finally:
            stack.close()
        log.warning("Request rejected", extra={"extra": {"status": status, "detail": detail}})
        if status == 401:
            raise AuthenticationError(message=detail or "Authentication failed")
        raise TransportError(
            code="API_ERROR",
            message=f"API Error: {status}" + (f" {detail}" if detail else ""),
            status=status,
        )

    # ---- 辅助方法 ----

    def _build_payload(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        return {
            "model": self._settings.model,
            "messages": [m.to_payload() for m in messages],
            "stream": True,
            "thinking": {"type": self._settings.thinking_type},
        }

    @staticmethod
    def _read_error_body(resp: Any) -> str:
        try:
            resp.read()
            text = resp.text or ""
        except (httpx.HTTPError, httpx.StreamError):
            return ""
        return text.strip()[:_ERROR_BODY_LIMIT]
