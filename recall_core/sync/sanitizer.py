"""注入标记与清洗。

注入块格式：
    <原文>\\n\\n------\\n\\n[Recall Retrieved Context]\\n<块>\\n[End Recall Context]

写入任何历史之前都要用 sanitize 去掉这一段，保证检索内容不会被再次存回记忆。
sanitize(inject_context(text, block)) == text，只要 text 本身不含标记。
"""

import re
import warnings

from recall_core.domain.exceptions import ConsistencyWarning
from recall_core.infrastructure.logging.logger import logger


CONTEXT_BEGIN = "[Recall Retrieved Context]"
CONTEXT_END = "[End Recall Context]"
CONTEXT_SEPARATOR = "\n\n------\n\n"

_BOUNDED_RE = re.compile(
    r"(?:\n\n-{6}\n\n)?" + re.escape(CONTEXT_BEGIN) + r".*?" + re.escape(CONTEXT_END),
    re.DOTALL,
)
# 结束标记缺失时（例如被截断），从开始标记一直删到末尾
_UNTERMINATED_RE = re.compile(r"(?:\n\n-{6}\n\n)?" + re.escape(CONTEXT_BEGIN) + r".*\Z", re.DOTALL)


def inject_context(text: str, block: str) -> str:
    if not block:
        return text
    return f"{text}{CONTEXT_SEPARATOR}{CONTEXT_BEGIN}\n{block}\n{CONTEXT_END}"


def sanitize(text: str) -> str:
    cleaned = _BOUNDED_RE.sub("", text or "")
    return _UNTERMINATED_RE.sub("", cleaned)


def contains_marker(text: str) -> bool:
    return CONTEXT_BEGIN in (text or "") or CONTEXT_END in (text or "")


def warn_if_marker_leaked(agent_id: str, text: str) -> bool:
    """模型回复里出现标记字面量说明提示词可能被回显，只告警不抛出。"""

    if not contains_marker(text):
        return False
    message = f"retrieval marker found in model response for @{agent_id}"
    warnings.warn(message, ConsistencyWarning, stacklevel=2)
    logger.warning(message, extra={"extra": {"agent_id": agent_id, "reason": "marker_leak"}})
    return True
