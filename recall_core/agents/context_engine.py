"""上下文引擎：宿主消息循环调用的钩子集合。

一轮对话的顺序：
1. augment_message: 建立原生会话 -> 闸门判定 -> 检索并注入上下文 -> 写入用户消息。
2. （宿主调用模型，得到回复文本）
3. persist_turn: 写入助手回复，必要时提交 legacy 写回。
会话重置时调用 on_session_reset，进程退出前调用 on_session_end 等待所有写入链完成。

这些入口从不向调用方抛出异常：失败时记录日志并退化为不注入/只走 legacy 路径。
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from recall_core.config.settings import Settings, settings
from recall_core.domain.models import InboundMessage, PrefetchResult, PrefetchTier, TurnState
from recall_core.gate.policy import Classifier, PrefetchGate
from recall_core.infrastructure.logging.logger import log_event, logger
from recall_core.infrastructure.storage.transcript_store import utc_iso
from recall_core.retrieval.orchestrator import RetrievalOrchestrator
from recall_core.retrieval.vector_memory import VectorMemoryBackend
from recall_core.sync.sanitizer import inject_context
from recall_core.sync.synchronizer import SessionSynchronizer


def summarize_distribution(distribution: Optional[Dict[str, int]]) -> str:
    dist = distribution or {}
    return ",".join(f"{name}={dist.get(name, 0)}" for name in ("memory", "resource", "skill"))


class ContextEngine:
    def __init__(
        self,
        cfg: Settings = settings,
        gate: Optional[PrefetchGate] = None,
        orchestrator: Optional[RetrievalOrchestrator] = None,
        synchronizer: Optional[SessionSynchronizer] = None,
        vector: Optional[VectorMemoryBackend] = None,
        classifier: Optional[Classifier] = None,
    ):
        self._cfg = cfg
        self._gate = gate or PrefetchGate(cfg, classifier)
        self._orchestrator = orchestrator or RetrievalOrchestrator(cfg)
        self._sync = synchronizer or SessionSynchronizer(cfg)
        self._vector = vector or VectorMemoryBackend(cfg, chains=self._sync.chains)

    @property
    def synchronizer(self) -> SessionSynchronizer:
        return self._sync

    # ---- 生命周期 ----

    def on_startup(self) -> None:
        if not self._cfg.context_enabled:
            logger.info("[recall] disabled")
            return
        flags = self._flags()
        summary = " ".join(f"{k}={int(v) if isinstance(v, bool) else v}" for k, v in flags.items())
        self._log(logging.INFO, f"[recall] enabled {summary}", {}, **flags)

    def health(self) -> Dict[str, Any]:
        if not self._cfg.context_enabled:
            return {"status": "ok", "summary": "disabled", "details": {"enabled": False}}
        details: Dict[str, Any] = {"enabled": True}
        details.update(self._flags())
        details["pending_sync_chains"] = len(self._sync.chains.pending)
        return {"status": "ok", "summary": "ready", "details": details}

    async def on_session_end(self) -> None:
        try:
            await self._sync.drain()
        except Exception:
            logger.exception("[recall] drain on session end failed")

    # ---- 每轮钩子 ----

    async def augment_message(
        self,
        inbound: InboundMessage,
        message: str,
        user_text_for_session: Optional[str] = None,
    ) -> Tuple[str, TurnState]:
        """返回 (注入上下文后的消息, 传给 persist_turn 的单轮状态)。"""

        state = TurnState()
        if not self._cfg.context_enabled:
            return message, state
        log_ctx = self._log_ctx(inbound)
        try:
            state = await self._sync.open_turn(inbound)
        except Exception:
            logger.exception("[recall] session setup failed", extra={"extra": log_ctx})
            state.native_write_failed = True

        augmented = message
        if not inbound.is_internal:
            try:
                augmented = await self._prefetch(inbound, message, state, log_ctx)
            except Exception:
                logger.exception("[recall] prefetch skipped", extra={"extra": log_ctx})

        try:
            await self._sync.record_user_turn(inbound, user_text_for_session or message, state)
        except Exception:
            logger.exception("[recall] user turn write failed", extra={"extra": log_ctx})
            state.native_write_failed = True
        return augmented, state

    async def persist_turn(
        self,
        inbound: InboundMessage,
        augmented_message: str,
        response: str,
        state: Optional[TurnState] = None,
    ) -> List[str]:
        """写入助手回复；返回 legacy 兜底原因列表（未兜底时为空）。"""

        if not self._cfg.context_enabled:
            return []
        state = state or TurnState()
        try:
            reasons = await self._sync.record_assistant_turn(inbound, augmented_message, response, state)
            if self._uses_vector(inbound):
                self._vector.save_turn(inbound, augmented_message, response)
            return reasons
        except Exception:
            logger.exception("[recall] persist_turn failed", extra={"extra": self._log_ctx(inbound)})
            return []

    async def on_session_reset(self, inbound: InboundMessage) -> None:
        if not self._cfg.context_enabled:
            return
        try:
            await self._sync.reset_session(inbound)
        except Exception:
            logger.exception("[recall] session reset failed", extra={"extra": self._log_ctx(inbound)})

    # ---- 内部 ----

    async def _prefetch(self, inbound: InboundMessage, message: str, state: TurnState, log_ctx: Dict[str, Any]) -> str:
        decision = await self._gate.decide(inbound.agent_id, message)
        if not decision.should_prefetch:
            self._log(logging.INFO, "[recall] prefetch skipped by gate", log_ctx, reason=decision.reason)
            return message

        if self._cfg.backend == "vector":
            result = await self._vector.fetch(inbound.agent_id, message, inbound.channel)
        else:
            result = await self._orchestrator.fetch(inbound.agent_id, message, state.session_id)

        if not result.block:
            self._log(
                logging.INFO,
                f"[recall] prefetch miss: tier={result.tier.value}",
                log_ctx,
                diagnostics=result.diagnostics,
            )
            return message

        if result.tier is PrefetchTier.NATIVE:
            await self._write_prefetch_dump(inbound.agent_id, message, state.session_id, result)
        self._log(
            logging.INFO,
            f"[recall] prefetch hit: tier={result.tier.value} distribution={summarize_distribution(result.hit_distribution)}",
            log_ctx,
            gate_reason=decision.reason,
            injected_chars=len(result.block),
        )
        if result.fallback_reason:
            self._log(
                logging.INFO,
                f"[recall] prefetch fallback: reason={result.fallback_reason}",
                log_ctx,
                diagnostics=result.diagnostics,
            )
        return inject_context(message, result.block)

    async def _write_prefetch_dump(
        self,
        agent_id: str,
        query: str,
        session_id: Optional[str],
        result: PrefetchResult,
    ) -> None:
        content = "\n".join([
            "# Recall Native Prefetch Dump (latest)",
            "",
            f"- captured_at: {utc_iso(datetime.now(timezone.utc))}",
            f"- agent_id: {agent_id}",
            f"- session_id: {session_id or 'none'}",
            f"- tier: {result.tier.value}",
            f"- distribution: {summarize_distribution(result.hit_distribution)}",
            f"- diagnostics: {' | '.join(result.diagnostics) or 'none'}",
            "",
            "## Query",
            "",
            query,
            "",
            "## Injected Block",
            "",
            result.block,
            "",
        ])
        path = self._cfg.prefetch_dump_file
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_text, content, encoding="utf-8")
        except OSError as e:
            logger.warning(f"[recall] prefetch dump failed: {e}", extra={"extra": {"agent_id": agent_id}})

    def _uses_vector(self, inbound: InboundMessage) -> bool:
        return (
            self._cfg.backend == "vector"
            and self._cfg.vector_enabled
            and not inbound.is_internal
            and self._vector.serves_channel(inbound.channel)
        )

    def _flags(self) -> Dict[str, Any]:
        return {
            "prefetch": self._cfg.prefetch,
            "session_native": self._cfg.native_session,
            "search_native": self._cfg.native_search,
            "autosync": self._cfg.autosync,
            "gate_mode": self._cfg.gate_mode,
            "backend": self._cfg.backend,
        }

    @staticmethod
    def _log_ctx(inbound: InboundMessage) -> Dict[str, Any]:
        return {
            "agent_id": inbound.agent_id,
            "channel": inbound.channel,
            "message_id": inbound.message_id,
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        log_event(level, message, **payload)
