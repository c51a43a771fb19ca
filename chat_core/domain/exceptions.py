"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

分类：
- PreconditionViolation: 调用方错误（重复提交、空输入、缺少凭据），不重试。
- TransportError: 非 2xx 响应或网络失败，作为可读消息交给调用方，不自动重试。
  - AuthenticationError: 401，凭据会被清除，需要重新输入。
  - NetworkError: 连接失败、超时、读取中断。
  - StreamCancelledError: 调用方主动取消，不清除凭据。
- PersistenceError: 存储读写失败，会话内记录日志后继续使用内存状态。
- DecodeWarning: 单行无法解析，只用于上报，不会抛出。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 key、line 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class PreconditionViolation(BusinessError):
    """调用时机或参数不满足前置条件。"""


class TransportError(BusinessError):
    """请求失败：非成功响应或网络层错误。

    status 为远端返回的 HTTP 状态码；网络层错误时为 None。
    """

    def __init__(self, code: str, message: str, status: Optional[int] = None, **extra):
        super().__init__(code=code, message=message, http_status=status or 502, **extra)
        self.status = status


class AuthenticationError(TransportError):
    """远端返回 401，当前凭据无效。"""

    def __init__(self, message: str = "Authentication failed", **extra):
        super().__init__(code="AUTH_FAILED", message=message, status=401, **extra)


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时、读取中断。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="NETWORK_ERROR", message=message, status=None, **extra)


class StreamCancelledError(TransportError):
    """调用方取消了进行中的流式请求。"""

    def __init__(self, message: str = "Request cancelled", **extra):
        super().__init__(code="CANCELLED", message=message, status=None, **extra)


class PersistenceError(BusinessError):
    """本地存储读写失败。"""


class DecodeWarning(BusinessError):
    """单行流数据无法解析，解码器记录后继续。"""
