"""检索与会话同步共享的数据模型。

- ConversationTurn: 一次请求/回复组成的对话轮次，创建后不可变。
- SessionMappingKey / SessionHandle: (channel, sender, agent) 到后端会话的映射。
- PrefetchResult: 一次预取的结果块、来源层级与诊断信息。
- GateVerdict: 预取闸门的判定结果。
- SearchHit / SessionTurn / VectorSnippet: 各后端返回内容解析后的统一结构。
- InboundMessage / TurnState: 钩子之间传递的消息上下文与单轮写入状态。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional


Verdict = Literal["yes", "no", "ambiguous"]
TurnRole = Literal["user", "assistant"]


@dataclass(frozen=True)
class ConversationTurn:
    message_id: str
    timestamp_utc: datetime
    user_text: str
    assistant_text: str
    is_internal: bool = False


@dataclass(frozen=True)
class SessionMappingKey:
    """(channel, sender_id, agent_id) 组合键，用于查找/创建后端会话。"""

    channel: str
    sender_id: str
    agent_id: str

    @classmethod
    def build(cls, channel: str, sender_id: Optional[str], agent_id: str) -> "SessionMappingKey":
        return cls(
            channel=(channel or "unknown-channel").strip(),
            sender_id=(sender_id or "").strip() or "unknown-sender",
            agent_id=agent_id.strip(),
        )

    def as_key(self) -> str:
        return f"{self.channel}::{self.sender_id}::{self.agent_id}"


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    agent_id: str
    created: bool = False


class PrefetchTier(str, Enum):
    """预取结果的来源层级。"""

    NATIVE = "native"
    LEGACY = "legacy"
    NONE = "none"


@dataclass
class PrefetchResult:
    block: str
    tier: PrefetchTier
    diagnostics: List[str] = field(default_factory=list)
    fallback_reason: Optional[str] = None
    hit_distribution: Optional[Dict[str, int]] = None


@dataclass(frozen=True)
class GateVerdict:
    verdict: Verdict
    reason: str
    score: int


@dataclass(frozen=True)
class SearchHit:
    """原生搜索返回的一条命中，order 保留后端返回顺序用于同分排序。"""

    uri: str
    score: float
    category: str
    snippet: str
    order: int = 0


@dataclass(frozen=True)
class SessionTurn:
    """从会话记录 markdown 中解析出的一轮对话。"""

    message_id: str
    timestamp: str
    user: str
    assistant: str


@dataclass(frozen=True)
class VectorSnippet:
    score: float
    snippet: str
    source: str


@dataclass(frozen=True)
class InboundMessage:
    """一次入站消息在钩子间共享的上下文。"""

    agent_id: str
    channel: str
    sender_id: str
    message_id: str
    is_internal: bool = False

    @property
    def mapping_key(self) -> SessionMappingKey:
        return SessionMappingKey.build(self.channel, self.sender_id, self.agent_id)


@dataclass
class TurnState:
    """augment 与 persist 之间传递的单轮状态。"""

    session_id: Optional[str] = None
    native_write_failed: bool = False
