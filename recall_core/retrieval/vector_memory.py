"""轻量向量检索后端（qmd 命令行）。

适用于没有富检索工具的简单部署：
- 每轮对话保存为 <storage_root>/memory/turns/<agent>/<时间戳>-<message_id>.md；
- 每个 agent 一个 collection，首次使用时注册，按间隔节流刷新索引；
- 检索时调用 search/vsearch，解析结果行后按字符预算拼装注入块。
"""

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from recall_core.config.settings import Settings, settings
from recall_core.domain.exceptions import BusinessError, ToolInvocationError
from recall_core.domain.models import InboundMessage, PrefetchResult, PrefetchTier, VectorSnippet
from recall_core.infrastructure.logging.logger import logger
from recall_core.infrastructure.storage.transcript_store import safe_timestamp, utc_iso
from recall_core.retrieval.formatting import ENTRY_SEPARATOR, fit_entries
from recall_core.sync.chains import SyncChains
from recall_core.sync.sanitizer import sanitize
from recall_core.tools.context_tool import parse_tool_json
from recall_core.tools.runner import CommandRunner, run_command


DETECT_TIMEOUT_MS = 5000
COLLECTION_ADD_TIMEOUT_MS = 10000
UPDATE_TIMEOUT_MS = 15000
QUERY_TIMEOUT_MS = 12000
MAX_TURN_TEXT_CHARS = 16000

SNIPPET_FIELDS = ("snippet", "context", "text", "content")
SOURCE_FIELDS = ("path", "file", "source", "title")


def sanitize_id(raw: str) -> str:
    return re.sub(r"[^a-z0-9_-]", "-", raw.lower())


def collection_name(agent_id: str) -> str:
    return f"recall-{sanitize_id(agent_id)}"


def truncate(text: str, limit: int = MAX_TURN_TEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n\n[truncated]"


def _first_text(row: Dict[str, Any], names) -> str:
    for name in names:
        value = row.get(name)
        if value:
            return str(value).strip()
    return ""


def parse_vector_results(payload: Any) -> List[VectorSnippet]:
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = payload.get("results") or []
    else:
        rows = []
    results: List[VectorSnippet] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        snippet = _first_text(row, SNIPPET_FIELDS)
        if not snippet:
            continue
        score = row.get("score")
        results.append(
            VectorSnippet(
                score=float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else 0.0,
                snippet=snippet,
                source=_first_text(row, SOURCE_FIELDS),
            )
        )
    return results


def format_vector_block(results: List[VectorSnippet], max_chars: int) -> str:
    entries = (
        f"Snippet {idx} (score={item.score:.3f}):\nSource: {item.source or 'unknown'}\n{item.snippet}"
        for idx, item in enumerate(results, start=1)
    )
    return ENTRY_SEPARATOR.join(fit_entries(entries, max_chars))


class VectorMemoryBackend:
    def __init__(
        self,
        cfg: Settings = settings,
        runner: CommandRunner = run_command,
        chains: Optional[SyncChains] = None,
    ):
        self._cfg = cfg
        self._runner = runner
        self._chains = chains or SyncChains()
        self._detected_key: Optional[str] = None
        self._command: Optional[str] = None
        self._unavailable_logged = False
        self._collections: Set[str] = set()
        self._last_update: Dict[str, float] = {}

    @property
    def turns_root(self) -> Path:
        return self._cfg.memory_root / "turns"

    def turns_dir(self, agent_id: str) -> Path:
        return self.turns_root / sanitize_id(agent_id)

    def serves_channel(self, channel: str) -> bool:
        return channel in self._cfg.vector_channels

    async def available(self) -> bool:
        """探测命令是否可用；同一个命令配置只探测一次。"""

        key = self._cfg.vector_command or "__auto__"
        if self._detected_key == key:
            return self._command is not None
        self._detected_key = key
        self._command = None
        if self._cfg.vector_command:
            candidates = [self._cfg.vector_command]
        else:
            candidates = [str(Path.home() / ".bun" / "bin" / "qmd"), "qmd"]
        for candidate in candidates:
            try:
                await self._runner(candidate, ["--help"], cwd=None, timeout_ms=DETECT_TIMEOUT_MS)
            except ToolInvocationError:
                continue
            self._command = candidate
            break
        return self._command is not None

    async def ensure_collection(self, agent_id: str) -> str:
        name = collection_name(agent_id)
        turns_dir = self.turns_dir(agent_id)
        await asyncio.to_thread(turns_dir.mkdir, parents=True, exist_ok=True)
        if name in self._collections:
            return name
        try:
            await self._run(
                ["collection", "add", str(turns_dir), "--name", name, "--mask", "**/*.md"],
                COLLECTION_ADD_TIMEOUT_MS,
            )
        except ToolInvocationError as exc:
            text = exc.message.lower()
            if "already" not in text and "exists" not in text:
                raise
        self._collections.add(name)
        return name

    async def maybe_update(self, name: str) -> None:
        now = time.monotonic()
        last = self._last_update.get(name)
        if last is not None and now - last < self._cfg.vector_update_interval_seconds:
            return
        await self._run(["update", "--collections", name], UPDATE_TIMEOUT_MS)
        self._last_update[name] = now

    async def fetch(self, agent_id: str, query: str, channel: str) -> PrefetchResult:
        if not self._cfg.vector_enabled:
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=["vector_disabled"])
        if not self.serves_channel(channel):
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=[f"vector_channel_skipped={channel}"])
        if not await self.available():
            if not self._unavailable_logged:
                logger.warning("vector command not found, memory retrieval disabled")
                self._unavailable_logged = True
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=["vector_tool_missing"])

        try:
            name = await self.ensure_collection(agent_id)
            await self.maybe_update(name)
            verb = "vsearch" if self._cfg.vector_semantic else "search"
            output = await self._run(
                [verb, query, "--json", "-c", name, "-n", str(self._cfg.vector_top_k),
                 "--min-score", str(self._cfg.vector_min_score)],
                QUERY_TIMEOUT_MS,
            )
            results = parse_vector_results(parse_tool_json(output, label="vector:query"))
        except BusinessError as exc:
            logger.warning(
                f"vector_search_error={exc.code}",
                extra={"extra": {"agent_id": agent_id, "error": exc.message}},
            )
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=[f"vector_search_error={exc.code}"])

        block = format_vector_block(results, self._cfg.vector_max_chars)
        diagnostics = [f"vector_hits={len(results)}"]
        if not block:
            return PrefetchResult(block="", tier=PrefetchTier.NONE, diagnostics=diagnostics)
        logger.log(logging.INFO, f"vector retrieval hit for @{agent_id}: {len(results)} snippet(s)")
        return PrefetchResult(block=block, tier=PrefetchTier.LEGACY, diagnostics=diagnostics)

    def save_turn(
        self,
        inbound: InboundMessage,
        user_text: str,
        response: str,
        moment: Optional[datetime] = None,
    ) -> "asyncio.Task[None]":
        """把一轮对话写成独立的 markdown 文件，经由 agent 的 SyncChain 串行写入。"""

        moment = moment or datetime.now(timezone.utc)

        async def task() -> None:
            stamp = utc_iso(moment)
            path = self.turns_dir(inbound.agent_id) / f"{safe_timestamp(stamp)}-{inbound.message_id}.md"
            content = "\n".join([
                f"# Turn for @{inbound.agent_id}",
                "",
                f"- Timestamp: {stamp}",
                f"- Channel: {inbound.channel}",
                f"- Sender: {inbound.sender_id}",
                f"- Message ID: {inbound.message_id}",
                "",
                "## User",
                "",
                truncate(sanitize(user_text)),
                "",
                "## Assistant",
                "",
                truncate(sanitize(response)),
                "",
            ])
            await asyncio.to_thread(self._write, path, content)

        return self._chains.submit(inbound.agent_id, task, label="vector_save_turn")

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    async def _run(self, args: List[str], timeout_ms: int) -> str:
        return await self._runner(self._command or "qmd", args, cwd=None, timeout_ms=timeout_ms)
