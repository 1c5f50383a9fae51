"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，错误分类是封闭的：
调用方只依据异常类型或 code 分支，自由文本只放在 details 里。

- ValidationError: 缺少必填字段等，在任何副作用之前拒绝。
- NotConnected: 未完成 connect 握手就发送 chat/clear。
- StorageUnavailable: 持久化后端失败，绝不静默回退为空历史。
- InferenceError: 推理后端调用失败（限流/后端故障/网络）。
- StreamFault: 流式响应中途失败或空闲超时。
- TransportLost: 客户端连接层在重试耗尽后才上报。
"""

from typing import Any, Dict, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        details: 原始原因描述，仅用于展示与日志。
        extra: 其他补充字段（例如 identity、provider 等）。
    """

    default_code = "BUSINESS_ERROR"
    default_status = 400

    def __init__(
        self,
        code: Optional[str] = None,
        message: str = "",
        http_status: Optional[int] = None,
        details: Optional[str] = None,
        **extra,
    ):
        self.code = code or self.default_code
        self.message = message or self.code
        self.http_status = http_status or self.default_status
        self.details = details
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

    default_code = "VALIDATION_ERROR"
    default_status = 400


class NotConnected(BusinessError):
    """连接尚未绑定身份。"""

    default_code = "NOT_CONNECTED"
    default_status = 409


class StorageUnavailable(BusinessError):
    """持久化后端读写失败。"""

    default_code = "STORE_ERROR"
    default_status = 503


class InferenceError(BusinessError):
    """推理后端调用失败的基类。"""

    default_code = "INFERENCE_ERROR"
    default_status = 502


class RateLimitError(InferenceError):
    """后端限流，由上层决定是否稍后重试。"""

    default_code = "RATE_LIMIT"
    default_status = 429


class BackendFaultError(InferenceError):
    """后端返回非 2xx/429 错误或无法解析的响应。"""

    default_code = "API_ERROR"
    default_status = 502


class NetworkError(InferenceError):
    """网络层错误，例如连接失败、超时等。"""

    default_code = "NETWORK_ERROR"
    default_status = 504


class StreamFault(InferenceError):
    """流式响应中途断开或在限定时间内没有数据。"""

    default_code = "STREAM_FAULT"
    default_status = 502


class TransportLost(BusinessError):
    """客户端连接丢失且重连次数已耗尽。"""

    default_code = "TRANSPORT_LOST"
    default_status = 503
