"""检索结果的解析与注入块拼装。

所有注入块遵循同一条预算规则：条目按顺序拼接（条目之间的 "\\n\\n" 计入长度），
在追加下一条会超出 max_chars 时停止，不截断单个条目；空输入得到空字符串。
"""

import re
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from recall_core.domain.models import SearchHit, SessionTurn


ENTRY_SEPARATOR = "\n\n"

HIT_BUCKETS: Tuple[Tuple[str, str], ...] = (
    ("memories", "memory"),
    ("resources", "resource"),
    ("skills", "skill"),
)
HIT_CATEGORIES = tuple(category for _, category in HIT_BUCKETS)
HIT_TEXT_FIELDS = ("abstract", "overview", "content", "text", "snippet")


def fit_entries(entries: Iterable[str], max_chars: int) -> List[str]:
    """返回能放进预算的最长前缀。"""

    kept: List[str] = []
    used = 0
    for entry in entries:
        if not entry:
            continue
        cost = len(entry) + (len(ENTRY_SEPARATOR) if kept else 0)
        if used + cost > max_chars:
            break
        kept.append(entry)
        used += cost
    return kept


def format_block(entries: Iterable[str], max_chars: int) -> str:
    return ENTRY_SEPARATOR.join(fit_entries(entries, max_chars))


# ---- 原生搜索命中 ----


def _category_of(raw: Any) -> str:
    text = str(raw or "").strip().lower()
    for category in HIT_CATEGORIES:
        if text.startswith(category):
            return category
    return "memory"


def _hit_text(item: Dict[str, Any]) -> str:
    for name in HIT_TEXT_FIELDS:
        value = item.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _hit_score(item: Dict[str, Any]) -> float:
    try:
        return float(item.get("score") or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_search_hits(payload: Any) -> List[SearchHit]:
    """把 search 输出解析成命中列表，order 记录后端返回顺序。

    支持三种形状：命中数组；带 memories/resources/skills 分桶的对象；
    以及把分桶对象放在 result 字段下的包装。
    """

    raw_items: List[Tuple[str, Dict[str, Any]]] = []
    if isinstance(payload, dict) and isinstance(payload.get("result"), (dict, list)):
        payload = payload["result"]
    if isinstance(payload, list):
        for item in payload:
            if isinstance(item, dict):
                raw_items.append((_category_of(item.get("category") or item.get("context_type")), item))
    elif isinstance(payload, dict):
        for bucket, category in HIT_BUCKETS:
            for item in payload.get(bucket) or []:
                if isinstance(item, dict):
                    raw_items.append((category, item))

    hits: List[SearchHit] = []
    for category, item in raw_items:
        uri = str(item.get("uri") or "").strip()
        snippet = _hit_text(item)
        if not uri and not snippet:
            continue
        hits.append(SearchHit(uri=uri, score=_hit_score(item), category=category, snippet=snippet, order=len(hits)))
    return hits


def rank_search_hits(hits: Sequence[SearchHit], max_hits: int) -> List[SearchHit]:
    """按分数降序取前 max_hits 个，同分保持返回顺序。"""

    return sorted(hits, key=lambda h: (-h.score, h.order))[:max_hits]


def summarize_hit_distribution(hits: Iterable[SearchHit]) -> Dict[str, int]:
    distribution = {category: 0 for category in HIT_CATEGORIES}
    for hit in hits:
        distribution[hit.category] = distribution.get(hit.category, 0) + 1
    return distribution


def format_search_hit(hit: SearchHit) -> str:
    label = hit.uri or "unknown"
    header = f"- [{hit.category}] score={hit.score:.3f} source={label}"
    return f"{header}\n{hit.snippet}" if hit.snippet else header


def build_search_block(hits: Sequence[SearchHit], max_chars: int, max_hits: int) -> Tuple[str, List[SearchHit]]:
    """返回 (注入块, 实际进入注入块的命中)。"""

    ranked = rank_search_hits(hits, max_hits)
    entries = fit_entries((format_search_hit(hit) for hit in ranked), max_chars)
    return ENTRY_SEPARATOR.join(entries), ranked[:len(entries)]


# ---- 会话记录 ----

_TURN_HEADER_RE = re.compile(r"^## Turn (.+)$", re.MULTILINE)
_MESSAGE_ID_RE = re.compile(r"^- message_id: *(.*)$", re.MULTILINE)
_USER_RE = re.compile(r"^### User\n(.*?)(?=^### Assistant\n|\Z)", re.MULTILINE | re.DOTALL)
_ASSISTANT_RE = re.compile(r"^### Assistant\n(.*)\Z", re.MULTILINE | re.DOTALL)
_TRAILING_SEPARATOR_RE = re.compile(r"(?:\n-{6}(?:\s*- ended_at: [^\n]*)?\s*)+\Z")


def _section_text(match) -> str:
    if not match:
        return ""
    return _TRAILING_SEPARATOR_RE.sub("", match.group(1).strip()).strip()


def parse_session_turns(content: str) -> List[SessionTurn]:
    """从会话记录 markdown 中按 "## Turn <时间戳>" 切分出对话轮次。"""

    headers = list(_TURN_HEADER_RE.finditer(content or ""))
    turns: List[SessionTurn] = []
    for idx, header in enumerate(headers):
        end = headers[idx + 1].start() if idx + 1 < len(headers) else len(content)
        body = content[header.end():end]
        message_id = _MESSAGE_ID_RE.search(body)
        user = _section_text(_USER_RE.search(body))
        assistant = _section_text(_ASSISTANT_RE.search(body))
        if not user and not assistant:
            continue
        turns.append(
            SessionTurn(
                message_id=message_id.group(1).strip() if message_id else "",
                timestamp=header.group(1).strip(),
                user=user,
                assistant=assistant,
            )
        )
    return turns


def dedup_turns(turns: Iterable[SessionTurn]) -> List[SessionTurn]:
    """按 (message_id, timestamp) 去重；没有 message_id 时按 (timestamp, user, assistant)。

    同一个键保留最后一次出现的内容，位置沿用第一次出现的位置。
    """

    unique: Dict[Tuple[str, ...], SessionTurn] = {}
    for turn in turns:
        if turn.message_id:
            key: Tuple[str, ...] = ("id", turn.message_id, turn.timestamp)
        else:
            key = ("text", turn.timestamp, turn.user, turn.assistant)
        unique[key] = turn
    return list(unique.values())


def format_session_turn(turn: SessionTurn) -> str:
    header = f"### {turn.timestamp}" + (f" ({turn.message_id})" if turn.message_id else "")
    return f"{header}\nUser: {turn.user}\nAssistant: {turn.assistant}"


def build_turn_block(turns: Sequence[SessionTurn], max_chars: int, max_turns: int) -> str:
    return format_block((format_session_turn(turn) for turn in turns[:max_turns]), max_chars)
