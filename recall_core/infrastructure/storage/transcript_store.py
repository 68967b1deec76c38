"""Legacy 会话记录文件。

每个 agent 一个追加写的 markdown 文件：
    <workspace_root>/<agent>/.recall/runtime/context/active-session.md

第一次写入时生成文件头（开始时间），之后每轮追加一个块；会话重置时追加结束时间，
由调用方镜像到归档路径后删除本地文件。所有方法都是同步文件 I/O，
异步调用方通过 asyncio.to_thread 调用。
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from recall_core.config.settings import settings
from recall_core.domain.exceptions import BusinessError
from recall_core.domain.models import ConversationTurn


TURN_SEPARATOR = "------"


def utc_iso(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def safe_timestamp(iso_ts: str) -> str:
    """把 ISO 时间戳变成可用作文件名的形式（":" 和 "." 替换为 "-"）。"""

    return iso_ts.replace(":", "-").replace(".", "-")


class LegacyTranscriptStore:
    def __init__(self, workspace_root: Union[str, Path, None] = None):
        self._root = Path(workspace_root or settings.workspace_root)

    def path_for(self, agent_id: str) -> Path:
        return self._root / agent_id / ".recall" / "runtime" / "context" / "active-session.md"

    def ensure(self, agent_id: str) -> Path:
        path = self.path_for(agent_id)
        if path.exists():
            return path
        header = "\n".join([
            f"# Recall Session (@{agent_id})",
            "",
            f"- started_at: {utc_iso()}",
            "",
        ])
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(header, encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="TRANSCRIPT_WRITE_ERROR", message=str(e), path=str(path))
        return path

    def append_turn(self, agent_id: str, turn: ConversationTurn) -> Path:
        """追加一轮对话；turn 中的文本应当已经清洗过注入块。"""

        path = self.ensure(agent_id)
        block = "\n".join([
            TURN_SEPARATOR,
            "",
            f"## Turn {utc_iso(turn.timestamp_utc)}",
            "",
            f"- message_id: {turn.message_id}",
            f"- source: {'internal' if turn.is_internal else 'external'}",
            "",
            "### User",
            "",
            turn.user_text,
            "",
            "### Assistant",
            "",
            turn.assistant_text,
            "",
        ])
        self._append(path, block)
        return path

    def close(self, agent_id: str) -> Optional[str]:
        """追加结束时间并返回该时间戳；文件不存在或为空时返回 None。"""

        path = self.path_for(agent_id)
        if not path.exists() or not path.read_text(encoding="utf-8").strip():
            return None
        ended_at = utc_iso()
        self._append(path, f"\n{TURN_SEPARATOR}\n\n- ended_at: {ended_at}\n")
        return ended_at

    def read(self, agent_id: str) -> str:
        path = self.path_for(agent_id)
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def remove(self, agent_id: str) -> None:
        self.path_for(agent_id).unlink(missing_ok=True)

    @staticmethod
    def _append(path: Path, text: str) -> None:
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            raise BusinessError(code="TRANSCRIPT_WRITE_ERROR", message=str(e), path=str(path))
