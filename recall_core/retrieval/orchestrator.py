"""检索编排：按层级逐级降级地获取一段受预算约束的历史上下文。

1. native: 后端结构化搜索，命中按分数排序后拼装。
2. legacy: 对会话记录（当前记录与已关闭归档）做 URI 语义查找，再逐个读取解析出对话轮次。
3. 全文回退：legacy 查找没有得到任何轮次时，直接整体读取各目标并解析。

任何一层的工具错误都只记一条诊断信息并进入下一层，fetch 本身不抛业务异常。
返回的注入块不带分隔标记，由调用方负责包裹。
"""

import logging
from typing import Callable, List, Optional, Tuple

from recall_core.config.settings import Settings, settings
from recall_core.domain.exceptions import BusinessError
from recall_core.domain.models import PrefetchResult, PrefetchTier, SessionTurn
from recall_core.infrastructure.logging.logger import logger
from recall_core.retrieval.formatting import (
    build_search_block,
    build_turn_block,
    dedup_turns,
    parse_search_hits,
    parse_session_turns,
    summarize_hit_distribution,
)
from recall_core.tools.context_tool import ContextToolClient


ToolFactory = Callable[[str], ContextToolClient]

FALLBACK_SEARCH_FAILED = "native_search_no_hits_or_error"
FALLBACK_SEARCH_DISABLED = "native_search_flag_disabled"


class RetrievalOrchestrator:
    def __init__(self, cfg: Settings = settings, tool_factory: Optional[ToolFactory] = None):
        self._cfg = cfg
        self._tool_factory = tool_factory or (lambda agent_id: ContextToolClient(agent_id, cfg))

    def read_targets(self, agent_id: str) -> List[str]:
        root = self._cfg.session_root
        return [f"{root}/{agent_id}/active.md", f"{root}/{agent_id}/closed"]

    async def fetch(self, agent_id: str, query: str, session_id: Optional[str] = None) -> PrefetchResult:
        if not self._cfg.prefetch:
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=["prefetch_disabled"])
        tool = self._tool_factory(agent_id)
        if not tool.available:
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=["tool_missing"])

        diagnostics: List[str] = []
        if self._cfg.native_search:
            native = await self._fetch_native(tool, query, session_id, diagnostics)
            if native is not None:
                return native
        else:
            diagnostics.append("native_search_disabled")

        block = await self._fetch_legacy(tool, agent_id, query, diagnostics)
        return PrefetchResult(
            block=block,
            tier=PrefetchTier.LEGACY if block else PrefetchTier.NONE,
            diagnostics=diagnostics,
            fallback_reason=FALLBACK_SEARCH_FAILED if self._cfg.native_search else FALLBACK_SEARCH_DISABLED,
        )

    # ---- Tier 1 ----

    async def _fetch_native(
        self,
        tool: ContextToolClient,
        query: str,
        session_id: Optional[str],
        diagnostics: List[str],
    ) -> Optional[PrefetchResult]:
        limit = max(self._cfg.prefetch_max_hits * 2, 12)
        try:
            payload = await tool.search(
                query,
                limit=limit,
                score_threshold=self._cfg.search_score_threshold,
                session_id=session_id,
            )
        except Exception as exc:
            code = exc.code if isinstance(exc, BusinessError) else type(exc).__name__
            diagnostics.append(f"native_search_error={code}")
            logger.warning(
                f"native_search_error={code}",
                extra={"extra": {"agent_id": tool.agent_id, "error": str(exc)}},
            )
            return None

        hits = parse_search_hits(payload)
        if not hits:
            diagnostics.append("native_search_empty")
            return None

        block, included = build_search_block(hits, self._cfg.prefetch_max_chars, self._cfg.prefetch_max_hits)
        if not block:
            diagnostics.append("native_search_over_budget")
            return None
        diagnostics += [f"native_search_hits={len(hits)}", f"session_id_used={1 if session_id else 0}"]
        return PrefetchResult(
            block=block,
            tier=PrefetchTier.NATIVE,
            diagnostics=diagnostics,
            hit_distribution=summarize_hit_distribution(included),
        )

    # ---- Tier 2 / 3 ----

    async def _fetch_legacy(
        self,
        tool: ContextToolClient,
        agent_id: str,
        query: str,
        diagnostics: List[str],
    ) -> str:
        targets = self.read_targets(agent_id)
        limit = max(self._cfg.prefetch_max_turns * 6, 12)

        candidates: List[Tuple[float, str]] = []
        for target in targets:
            try:
                found = await tool.find_uris(query, target, limit)
            except BusinessError as exc:
                diagnostics.append(f"{target}:find_error")
                logger.log(logging.INFO, f"{target}:find_error", extra={"extra": {"agent_id": agent_id, "code": exc.code}})
                continue
            candidates.extend(found)
            diagnostics.append(f"{target}:find={len(found)}")

        uris: List[str] = []
        for _, uri in candidates:
            if uri not in uris:
                uris.append(uri)
            if len(uris) >= limit:
                break
        diagnostics.append(f"find_total={len(uris)}")

        turns: List[SessionTurn] = []
        for uri in uris:
            try:
                content = await tool.read(uri)
            except BusinessError:
                continue
            if content:
                turns.extend(parse_session_turns(content))

        if not turns:
            turns = await self._read_full_text(tool, targets, diagnostics)

        unique = dedup_turns(turns)
        if not unique:
            return ""
        return build_turn_block(unique, self._cfg.prefetch_max_chars, self._cfg.prefetch_max_turns)

    async def _read_full_text(
        self,
        tool: ContextToolClient,
        targets: List[str],
        diagnostics: List[str],
    ) -> List[SessionTurn]:
        turns: List[SessionTurn] = []
        for target in targets:
            try:
                content = await tool.read(target)
            except BusinessError:
                diagnostics.append(f"{target}:fallback_error")
                continue
            if not content:
                diagnostics.append(f"{target}:fallback_empty")
                continue
            parsed = parse_session_turns(content)
            diagnostics.append(f"{target}:fallback_chars={len(content)},turns={len(parsed)}")
            turns.extend(parsed)
        return turns
