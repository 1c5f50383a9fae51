"""统一的消息、请求与事件数据模型。

本模块定义了中继内部在存储、推理后端与客户端之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant），追加后不可变。
- ConversationLog: 某个身份的有序消息序列（不可变元组）。
- ClientRequest: 客户端发来的一帧 JSON 请求。
- RelayEvent: 中继发给客户端的一帧 JSON 事件。
- StreamState: 单次推理调用期间的增量累积状态。

所有 Provider 与存储适配器都只依赖这些模型，
并负责在各自的 JSON 格式和这些模型之间做转换。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple, Union, get_args

from relay_core.domain.exceptions import ValidationError


# 消息角色类型（与推理后端的 role 字段对应）
Role = Literal["system", "user", "assistant"]
ROLES = frozenset(get_args(Role))

# 推理后端返回的原始分块：文本、字节，或被序列化成 {"0": 100, ...} 的字节映射
RawChunk = Union[str, bytes, bytearray, memoryview, Dict[str, int], list]


@dataclass(frozen=True)
class Message:
    """一条对话消息，既用于存储，也用于构造推理请求。"""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"Unsupported role: {self.role!r}")
        if not isinstance(self.content, str):
            raise ValidationError(code="INVALID_CONTENT", message="Message content must be a string")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        if not isinstance(data, dict) or "role" not in data or "content" not in data:
            raise ValidationError(code="INVALID_MESSAGE", message="Message requires role and content")
        return cls(role=data["role"], content=data["content"])


ConversationLog = Tuple[Message, ...]


def log_to_payload(log: ConversationLog) -> list:
    return [m.to_dict() for m in log]


@dataclass
class ClientRequest:
    """客户端到中继的一帧请求。

    - type: 请求类型，connect/chat/history/clear 之外的类型保留原值，
      由 SessionRelay 统一回复 "unknown" 错误。
    - user_id: 身份提示（connect 时可选）。
    - content: 聊天内容（仅 chat）。
    - message_id: 关联 ID，在 complete 事件中原样返回。
    """

    type: str
    user_id: Optional[str] = None
    content: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "ClientRequest":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValidationError(code="INVALID_JSON", message="Failed to process message", details=str(e))
        if not isinstance(data, dict):
            raise ValidationError(code="INVALID_JSON", message="Failed to process message", details="Frame is not an object")
        req_type = data.get("type")
        if not isinstance(req_type, str) or not req_type:
            raise ValidationError(code="MISSING_TYPE", message="Request type is required")
        user_id = data.get("userId")
        return cls(
            type=req_type,
            user_id=str(user_id) if user_id else None,
            content=data.get("content"),
            message_id=data.get("messageId"),
        )

    def to_json(self) -> str:
        payload: Dict[str, Any] = {"type": self.type}
        if self.user_id is not None:
            payload["userId"] = self.user_id
        if self.content is not None:
            payload["content"] = self.content
        if self.message_id is not None:
            payload["messageId"] = self.message_id
        return json.dumps(payload, ensure_ascii=False)


EventType = Literal["connected", "status", "chunk", "complete", "history", "cleared", "error"]


@dataclass
class RelayEvent:
    """中继到客户端的一帧事件。"""

    type: EventType
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        payload.update(self.fields)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "RelayEvent":
        data = json.loads(raw)
        event_type = data.pop("type")
        return cls(type=event_type, fields=data)

    @classmethod
    def connected(cls, user_id: str) -> "RelayEvent":
        return cls("connected", {"userId": user_id})

    @classmethod
    def thinking(cls) -> "RelayEvent":
        return cls("status", {"status": "thinking"})

    @classmethod
    def chunk(cls, content: str) -> "RelayEvent":
        return cls("chunk", {"content": content})

    @classmethod
    def complete(cls, message_id: Optional[str]) -> "RelayEvent":
        return cls("complete", {"messageId": message_id})

    @classmethod
    def history(cls, log: ConversationLog) -> "RelayEvent":
        return cls("history", {"messages": log_to_payload(log)})

    @classmethod
    def cleared(cls) -> "RelayEvent":
        return cls("cleared")

    @classmethod
    def error(cls, error: str, code: str, details: Optional[str] = None) -> "RelayEvent":
        fields: Dict[str, Any] = {"error": error, "code": code}
        if details:
            fields["details"] = details
        return cls("error", fields)


@dataclass
class StreamState:
    """单次推理调用的累积状态，完成或失败后即丢弃。"""

    message_id: Optional[str]
    pieces: List[str] = field(default_factory=list)

    def add(self, delta: str) -> None:
        self.pieces.append(delta)

    @property
    def delta_count(self) -> int:
        return len(self.pieces)

    @property
    def accumulated_text(self) -> str:
        return "".join(self.pieces)
