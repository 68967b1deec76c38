"""对外 API 服务模块。

提供进程级默认引擎与简化的异步函数接口，供宿主消息循环调用。
"""

from typing import Any, Dict, List, Optional, Tuple

from recall_core.agents.context_engine import ContextEngine
from recall_core.config.settings import settings
from recall_core.domain.models import InboundMessage, TurnState
from recall_core.providers import create_classifier


_engine: Optional[ContextEngine] = None


def get_default_engine() -> ContextEngine:
    """获取默认的上下文引擎实例（单例）。"""
    global _engine
    if _engine is None:
        classifier = create_classifier(settings)
        _engine = ContextEngine(
            cfg=settings,
            classifier=classifier.classify if classifier else None,
        )
        _engine.on_startup()
    return _engine


def reset_default_engine() -> None:
    """丢弃默认引擎（测试或重新加载配置时使用）。"""
    global _engine
    _engine = None


async def before_model(
    inbound: InboundMessage,
    message: str,
    user_text_for_session: Optional[str] = None,
) -> Tuple[str, TurnState]:
    """在调用模型前注入检索上下文并写入用户消息。

    Args:
        inbound: 入站消息上下文（agent、渠道、发送者、消息ID）
        message: 发给模型的原始消息
        user_text_for_session: 写入会话的用户文本（可选，默认同 message）

    Returns:
        (注入上下文后的消息, 单轮状态) 的元组
    """
    return await get_default_engine().augment_message(inbound, message, user_text_for_session)


async def after_model(
    inbound: InboundMessage,
    augmented_message: str,
    response: str,
    state: Optional[TurnState] = None,
) -> List[str]:
    return await get_default_engine().persist_turn(inbound, augmented_message, response, state)


async def reset_session(inbound: InboundMessage) -> None:
    await get_default_engine().on_session_reset(inbound)


async def shutdown() -> None:
    """等待所有未完成的写入链。进程退出前调用。"""
    if _engine is not None:
        await _engine.on_session_end()


def health() -> Dict[str, Any]:
    return get_default_engine().health()
