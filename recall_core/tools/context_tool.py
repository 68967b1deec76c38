"""富检索/会话工具客户端。

工具是 agent 目录下的一个脚本，每个动词对应一次子进程调用：

- search <query> --limit N [--score-threshold T] [--session-id S] --json
- find-uris <query> <target> --limit N          每行输出 "score<TAB>uri"
- read <uri>                                    输出原始文本
- session-create --agent-id A --channel C --sender-id S --json
- session-message <session_id> <role> <text> --json
- session-commit <session_id> --json
- write-file <target> <local_file>

以 "[context-tool]" 开头的行是工具自身日志，解析时忽略。
"""

import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from json_repair import repair_json

from recall_core.config.settings import Settings, settings
from recall_core.domain.exceptions import ParseError, ToolInvocationError
from recall_core.infrastructure.logging.logger import logger
from recall_core.tools.runner import CommandRunner, run_command


TOOL_LOG_PREFIX = "[context-tool]"

# session-create 返回值中 session id 的候选位置，按顺序取第一个非空字符串
SESSION_ID_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("id",),
    ("session_id",),
    ("sessionId",),
    ("result", "id"),
    ("result", "session_id"),
    ("result", "sessionId"),
    ("data", "id"),
    ("data", "session_id"),
    ("data", "sessionId"),
)


def strip_tool_log_lines(output: str) -> List[str]:
    lines = (line.strip() for line in (output or "").strip().splitlines())
    return [line for line in lines if line and not line.startswith(TOOL_LOG_PREFIX)]


def parse_tool_json(raw: str, label: str = "context-tool") -> Any:
    """解析工具 JSON 输出；空输出视为 {}，损坏的 JSON 先尝试修复再放弃。"""

    text = "\n".join(strip_tool_log_lines(raw))
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        first_error = str(exc)

    repaired = repair_json(text, return_objects=True)
    if repaired in ("", None):
        raise ParseError(code="JSON_INVALID", message=f"{label}: {first_error}")
    logger.warning(
        f"{label} returned malformed JSON, repaired",
        extra={"extra": {"label": label, "error": first_error}},
    )
    return repaired


def extract_session_id(payload: Any) -> Optional[str]:
    """按 SESSION_ID_PATHS 的顺序提取 session id，找不到返回 None。"""

    if not isinstance(payload, dict):
        return None
    for path in SESSION_ID_PATHS:
        node: Any = payload
        for part in path:
            node = node.get(part) if isinstance(node, dict) else None
        if isinstance(node, str) and node.strip():
            return node.strip()
    return None


class ContextToolClient:
    """单个 agent 的检索工具客户端，所有调用都在 agent 目录下执行。"""

    def __init__(self, agent_id: str, cfg: Settings = settings, runner: CommandRunner = run_command):
        self.agent_id = agent_id
        self._cfg = cfg
        self._runner = runner
        self.workdir = Path(cfg.workspace_root) / agent_id

    @property
    def tool_path(self) -> Path:
        return self.workdir / self._cfg.tool_relpath

    @property
    def available(self) -> bool:
        return self.tool_path.is_file()

    async def run(self, args: Sequence[str], timeout_ms: Optional[int] = None) -> str:
        if not self.available:
            raise ToolInvocationError(
                code="TOOL_MISSING",
                message=f"context tool missing for @{self.agent_id}",
                path=str(self.tool_path),
            )
        return await self._runner(
            self._cfg.tool_command,
            [str(self.tool_path), *args],
            cwd=self.workdir,
            timeout_ms=timeout_ms or self._cfg.prefetch_timeout_ms,
        )

    async def run_json(self, args: Sequence[str], timeout_ms: Optional[int] = None) -> Any:
        command_args = list(args) if "--json" in args else [*args, "--json"]
        output = await self.run(command_args, timeout_ms)
        verb = args[0] if args else "unknown"
        return parse_tool_json(output, label=f"context-tool:{verb}")

    # ---- 检索 ----

    async def search(
        self,
        query: str,
        limit: int,
        score_threshold: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Any:
        args = ["search", query, "--limit", str(limit)]
        if score_threshold is not None:
            args += ["--score-threshold", score_threshold]
        if session_id:
            args += ["--session-id", session_id]
        return await self.run_json(args)

    async def find_uris(self, query: str, target: str, limit: int) -> List[Tuple[float, str]]:
        output = await self.run(["find-uris", query, target, "--limit", str(limit)])
        found: List[Tuple[float, str]] = []
        for line in strip_tool_log_lines(output):
            tab = line.find("\t")
            if tab <= 0:
                continue
            uri = line[tab + 1:].strip()
            if not uri:
                continue
            try:
                score = float(line[:tab])
            except ValueError:
                score = 0.0
            found.append((score, uri))
        return found

    async def read(self, uri: str) -> str:
        output = (await self.run(["read", uri])).strip()
        if output.startswith(TOOL_LOG_PREFIX):
            return ""
        return output

    # ---- 会话 ----

    async def session_create(self, agent_id: str, channel: str, sender_id: str) -> str:
        payload = await self.run_json(
            ["session-create", "--agent-id", agent_id, "--channel", channel, "--sender-id", sender_id]
        )
        session_id = extract_session_id(payload)
        if not session_id:
            raise ParseError(code="SESSION_ID_MISSING", message="session-create returned no session id")
        return session_id

    async def session_message(self, session_id: str, role: str, text: str) -> Any:
        return await self.run_json(["session-message", session_id, role, text])

    async def session_commit(self, session_id: str) -> Any:
        return await self.run_json(["session-commit", session_id], timeout_ms=self._cfg.commit_timeout_ms)

    async def write_file(self, target: str, local_file: Path) -> None:
        await self.run(["write-file", target, str(local_file)], timeout_ms=self._cfg.commit_timeout_ms)
        logger.log(
            logging.INFO,
            "context-tool write-file done",
            extra={"extra": {"agent_id": self.agent_id, "target": target}},
        )
