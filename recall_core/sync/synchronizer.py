"""会话状态同步：原生 session 写入与 legacy 会话记录写回。

两条路径实现同一组动作（建立会话、写入一轮、结束会话）：
- NativeSessionWriter: 通过检索工具的 session-* 动词写入后端会话。
- LegacyTranscriptWriter: 追加本地 markdown 记录，并尽力镜像到远端归档路径。

SessionSynchronizer 是策略层：优先走原生路径，任何失败都记到 TurnState，
随后由 legacy 路径兜底，保证一轮对话不会被静默丢弃。
legacy 写回和远端镜像都提交到 agent 的 SyncChain，按提交顺序串行执行。
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from recall_core.config.settings import Settings, settings
from recall_core.domain.exceptions import BusinessError
from recall_core.domain.models import (
    ConversationTurn,
    InboundMessage,
    SessionHandle,
    SessionMappingKey,
    TurnRole,
    TurnState,
)
from recall_core.infrastructure.logging.logger import log_event
from recall_core.infrastructure.storage.session_map_store import JsonSessionMapStore
from recall_core.infrastructure.storage.transcript_store import LegacyTranscriptStore, safe_timestamp
from recall_core.sync.chains import SyncChains
from recall_core.sync.sanitizer import contains_marker, sanitize, warn_if_marker_leaked
from recall_core.tools.context_tool import ContextToolClient


ToolFactory = Callable[[str], ContextToolClient]


def _log(level: int, message: str, agent_id: str, **fields) -> None:
    payload = {"agent_id": agent_id}
    payload.update(fields)
    log_event(level, message, **payload)


class NativeSessionWriter:
    """后端原生 session：映射表查找/创建、逐条写入消息、提交。"""

    def __init__(self, cfg: Settings, store: JsonSessionMapStore, tool_factory: ToolFactory):
        self._cfg = cfg
        self._store = store
        self._tool_factory = tool_factory
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: SessionMappingKey) -> asyncio.Lock:
        return self._locks.setdefault(key.as_key(), asyncio.Lock())

    async def resolve(self, key: SessionMappingKey) -> SessionHandle:
        async with self._lock_for(key):
            existing = await asyncio.to_thread(self._store.get, key)
            if existing:
                return SessionHandle(session_id=existing, agent_id=key.agent_id, created=False)
            tool = self._tool_factory(key.agent_id)
            session_id = await tool.session_create(key.agent_id, key.channel, key.sender_id)
            await asyncio.to_thread(self._store.upsert, key, session_id)
            return SessionHandle(session_id=session_id, agent_id=key.agent_id, created=True)

    async def append(self, handle: SessionHandle, role: TurnRole, text: str) -> None:
        started = time.monotonic()
        tool = self._tool_factory(handle.agent_id)
        await tool.session_message(handle.session_id, role, sanitize(text))
        _log(
            logging.INFO,
            "native session write ok",
            handle.agent_id,
            session_id=handle.session_id,
            role=role,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    async def commit_and_clear(self, key: SessionMappingKey) -> Optional[str]:
        async with self._lock_for(key):
            session_id = await asyncio.to_thread(self._store.get, key)
            if not session_id:
                _log(logging.INFO, "session reset: no native session mapping", key.agent_id)
                return None
            try:
                await self._tool_factory(key.agent_id).session_commit(session_id)
                _log(logging.INFO, "native session committed", key.agent_id, session_id=session_id)
            except BusinessError as exc:
                _log(
                    logging.WARNING,
                    f"native_session_commit_failed={exc.code}",
                    key.agent_id,
                    session_id=session_id,
                    error=exc.message,
                )
            finally:
                await asyncio.to_thread(self._store.delete, key)
                _log(logging.INFO, "session map cleared", key.agent_id, session_id=session_id)
            return session_id


class LegacyTranscriptWriter:
    """本地会话记录写回，所有操作都经由 agent 的 SyncChain 串行执行。"""

    def __init__(self, cfg: Settings, transcripts: LegacyTranscriptStore, chains: SyncChains, tool_factory: ToolFactory):
        self._cfg = cfg
        self._transcripts = transcripts
        self._chains = chains
        self._tool_factory = tool_factory

    def active_target(self, agent_id: str) -> str:
        return f"{self._cfg.session_root}/{agent_id}/active.md"

    def closed_target(self, agent_id: str, ended_at: str) -> str:
        return f"{self._cfg.session_root}/{agent_id}/closed/{safe_timestamp(ended_at)}.md"

    def writeback(self, agent_id: str, turn: ConversationTurn) -> "asyncio.Task[None]":
        async def task() -> None:
            if contains_marker(turn.user_text) or contains_marker(turn.assistant_text):
                _log(logging.WARNING, "writeback guard: injected context marker before sync", agent_id,
                     message_id=turn.message_id)
            clean = ConversationTurn(
                message_id=turn.message_id,
                timestamp_utc=turn.timestamp_utc,
                user_text=sanitize(turn.user_text),
                assistant_text=sanitize(turn.assistant_text),
                is_internal=turn.is_internal,
            )
            path = await asyncio.to_thread(self._transcripts.append_turn, agent_id, clean)
            await self._mirror(agent_id, path, self.active_target(agent_id))

        return self._chains.submit(agent_id, task, label="legacy_writeback")

    def finalize(self, agent_id: str) -> "asyncio.Task[None]":
        async def task() -> None:
            ended_at = await asyncio.to_thread(self._transcripts.close, agent_id)
            if ended_at is None:
                return
            path = self._transcripts.path_for(agent_id)
            if not await self._mirror(agent_id, path, self.closed_target(agent_id, ended_at)):
                # 归档失败时保留本地记录，检索仍能读到这段历史
                _log(logging.WARNING, "legacy session kept locally: archive failed", agent_id, ended_at=ended_at)
                return
            await asyncio.to_thread(self._transcripts.remove, agent_id)
            _log(logging.INFO, "legacy session finalized", agent_id, ended_at=ended_at)

        return self._chains.submit(agent_id, task, label="legacy_finalize")

    async def _mirror(self, agent_id: str, local_file: Path, target: str) -> bool:
        """镜像到远端；失败返回 False。没有工具时视为无需镜像，返回 True。"""

        tool = self._tool_factory(agent_id)
        if not tool.available:
            return True
        try:
            await tool.write_file(target, local_file)
        except BusinessError as exc:
            _log(logging.WARNING, f"legacy_mirror_failed={exc.code}", agent_id, target=target, error=exc.message)
            return False
        return True


class SessionSynchronizer:
    """策略层：决定一轮对话走原生路径、legacy 路径还是两者。"""

    def __init__(
        self,
        cfg: Settings = settings,
        store: Optional[JsonSessionMapStore] = None,
        transcripts: Optional[LegacyTranscriptStore] = None,
        chains: Optional[SyncChains] = None,
        tool_factory: Optional[ToolFactory] = None,
    ):
        self._cfg = cfg
        self.chains = chains or SyncChains()
        factory = tool_factory or (lambda agent_id: ContextToolClient(agent_id, cfg))
        self.native = NativeSessionWriter(cfg, store or JsonSessionMapStore(cfg.session_map_file), factory)
        self.legacy = LegacyTranscriptWriter(
            cfg, transcripts or LegacyTranscriptStore(cfg.workspace_root), self.chains, factory
        )

    # ---- 基本操作 ----

    async def resolve_or_create_session(self, key: SessionMappingKey) -> SessionHandle:
        return await self.native.resolve(key)

    async def append_turn(self, handle: SessionHandle, role: TurnRole, text: str) -> None:
        await self.native.append(handle, role, text)

    async def commit_and_clear(self, key: SessionMappingKey) -> Optional[str]:
        return await self.native.commit_and_clear(key)

    def writeback_legacy(self, agent_id: str, turn: ConversationTurn) -> "asyncio.Task[None]":
        return self.legacy.writeback(agent_id, turn)

    def finalize_legacy(self, agent_id: str) -> "asyncio.Task[None]":
        return self.legacy.finalize(agent_id)

    async def drain(self) -> None:
        await self.chains.drain()

    # ---- 单轮流程 ----

    def _native_applies(self, inbound: InboundMessage) -> bool:
        return self._cfg.native_session and not inbound.is_internal

    async def open_turn(self, inbound: InboundMessage) -> TurnState:
        """建立（或复用）原生会话；失败只记在返回的 TurnState 里。"""

        state = TurnState()
        if not self._native_applies(inbound):
            return state
        try:
            handle = await self.resolve_or_create_session(inbound.mapping_key)
        except Exception as exc:
            state.native_write_failed = True
            code = exc.code if isinstance(exc, BusinessError) else type(exc).__name__
            _log(logging.WARNING, f"native_session_setup_failed={code}", inbound.agent_id, error=str(exc))
            return state
        state.session_id = handle.session_id
        _log(
            logging.INFO,
            "native session resolved",
            inbound.agent_id,
            session_id=handle.session_id,
            status="created" if handle.created else "reused",
        )
        return state

    async def record_user_turn(self, inbound: InboundMessage, user_text: str, state: TurnState) -> None:
        if not self._native_applies(inbound):
            return
        if not state.session_id:
            state.native_write_failed = True
            _log(logging.WARNING, "native session write skipped: session_id_unavailable", inbound.agent_id)
            return
        await self._append_safely(inbound.agent_id, state, "user", user_text)

    async def record_assistant_turn(
        self,
        inbound: InboundMessage,
        user_message: str,
        response: str,
        state: TurnState,
    ) -> List[str]:
        """写入助手回复，并在需要时提交 legacy 写回；返回 legacy 兜底原因（未兜底时为空）。"""

        warn_if_marker_leaked(inbound.agent_id, response)
        if self._native_applies(inbound) and state.session_id:
            await self._append_safely(inbound.agent_id, state, "assistant", response)

        reasons = self.legacy_fallback_reasons(inbound, state)
        if not reasons or not self._cfg.autosync:
            if not reasons:
                _log(logging.INFO, "native write path complete", inbound.agent_id, session_id=state.session_id)
            return reasons

        _log(
            logging.INFO,
            f"legacy writeback fallback: reasons={','.join(reasons)}",
            inbound.agent_id,
            reasons=reasons,
            message_id=inbound.message_id,
        )
        turn = ConversationTurn(
            message_id=inbound.message_id,
            timestamp_utc=datetime.now(timezone.utc),
            user_text=user_message,
            assistant_text=response,
            is_internal=inbound.is_internal,
        )
        self.writeback_legacy(inbound.agent_id, turn)
        return reasons

    def legacy_fallback_reasons(self, inbound: InboundMessage, state: TurnState) -> List[str]:
        reasons: List[str] = []
        if inbound.is_internal:
            reasons.append("internal_message")
        if not self._cfg.native_session:
            reasons.append("session_native_disabled")
        if self._cfg.native_session and not state.session_id:
            reasons.append("session_id_unavailable")
        if state.native_write_failed:
            reasons.append("native_session_write_failed")
        return reasons

    async def reset_session(self, inbound: InboundMessage) -> None:
        if self._native_applies(inbound):
            await self.commit_and_clear(inbound.mapping_key)
        if self._cfg.autosync:
            self.finalize_legacy(inbound.agent_id)

    async def _append_safely(self, agent_id: str, state: TurnState, role: TurnRole, text: str) -> None:
        handle = SessionHandle(session_id=state.session_id, agent_id=agent_id)
        try:
            await self.append_turn(handle, role, text)
        except Exception as exc:
            # 任何失败都必须落到 legacy 兜底，不能让这一轮丢失
            state.native_write_failed = True
            code = exc.code if isinstance(exc, BusinessError) else type(exc).__name__
            _log(
                logging.WARNING,
                f"native_session_write_failed={code}",
                agent_id,
                session_id=state.session_id,
                role=role,
                error=str(exc),
            )
