"""Recall Core 顶层包。

该包提供对话上下文检索与会话同步引擎，
包括配置加载、预取闸门、分层检索编排、
原生/legacy 双路会话写回以及按 agent 串行的写入链。
"""

from recall_core.agents.context_engine import ContextEngine
from recall_core.domain.models import InboundMessage, PrefetchResult, TurnState

__all__ = ["ContextEngine", "InboundMessage", "PrefetchResult", "TurnState"]
