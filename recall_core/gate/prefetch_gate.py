"""预取闸门：判断一条入站消息是否值得先查历史记忆。

判定顺序：
1. 规范化文本（小写、去引号与标点、合并空白）。
2. 命中 force pattern -> yes，直接短路。
3. 命中 skip pattern -> no。
4. 对固定的中英双语加权词表打分，与阈值和模糊区间比较。

对 ambiguous 结果，可以用 build_llm_gate_prompt 构造严格 JSON 分类提示词，
再用 parse_llm_gate_result 解析模型输出；如何接入最终决策见 gate.policy。
"""

import json
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from recall_core.domain.exceptions import ParseError
from recall_core.domain.models import GateVerdict
from recall_core.prompts import load_prompt


@dataclass(frozen=True)
class WeightedPattern:
    pattern: str
    weight: int
    reason: str


POSITIVE_PATTERNS: Tuple[WeightedPattern, ...] = (
    WeightedPattern("memory", 2, "kw_memory"),
    WeightedPattern("long term memory", 3, "kw_long_term_memory"),
    WeightedPattern("remember", 2, "kw_remember"),
    WeightedPattern("recall", 2, "kw_recall"),
    WeightedPattern("previously told", 3, "kw_previously_told"),
    WeightedPattern("based on memory", 3, "kw_based_on_memory"),
    WeightedPattern("from memory", 2, "kw_from_memory"),
    WeightedPattern("earlier chat", 2, "kw_earlier_chat"),
    WeightedPattern("history with you", 2, "kw_history"),
    WeightedPattern("记忆", 2, "kw_cn_memory"),
    WeightedPattern("长期记忆", 4, "kw_cn_long_term_memory"),
    WeightedPattern("记得", 2, "kw_cn_remember"),
    WeightedPattern("回忆", 2, "kw_cn_recall"),
    WeightedPattern("之前说过", 3, "kw_cn_previously_told"),
    WeightedPattern("之前告诉过", 3, "kw_cn_previously_told_2"),
    WeightedPattern("根据记忆", 4, "kw_cn_based_on_memory"),
    WeightedPattern("基于记忆", 4, "kw_cn_based_on_memory_2"),
    WeightedPattern("只根据记忆", 5, "kw_cn_memory_only"),
    WeightedPattern("只基于记忆", 5, "kw_cn_memory_only_2"),
)

NEGATIVE_PATTERNS: Tuple[WeightedPattern, ...] = (
    WeightedPattern("latest", -3, "kw_latest"),
    WeightedPattern("today", -2, "kw_today"),
    WeightedPattern("news", -3, "kw_news"),
    WeightedPattern("weather", -3, "kw_weather"),
    WeightedPattern("stock price", -3, "kw_stock_price"),
    WeightedPattern("crypto price", -3, "kw_crypto_price"),
    WeightedPattern("search web", -4, "kw_search_web"),
    WeightedPattern("google", -3, "kw_google"),
    WeightedPattern("run command", -2, "kw_run_command"),
    WeightedPattern("shell", -2, "kw_shell"),
    WeightedPattern("npm ", -2, "kw_npm"),
    WeightedPattern("git ", -2, "kw_git"),
    WeightedPattern("今天", -2, "kw_cn_today"),
    WeightedPattern("最新", -3, "kw_cn_latest"),
    WeightedPattern("新闻", -3, "kw_cn_news"),
    WeightedPattern("天气", -3, "kw_cn_weather"),
    WeightedPattern("实时", -3, "kw_cn_realtime"),
    WeightedPattern("查一下", -2, "kw_cn_lookup"),
    WeightedPattern("帮我查", -2, "kw_cn_lookup_2"),
    WeightedPattern("执行", -2, "kw_cn_execute"),
    WeightedPattern("命令", -2, "kw_cn_command"),
)

DEFAULT_FORCE_PATTERNS: Tuple[str, ...] = (
    "based on memory",
    "from long term memory",
    "long-term memory",
    "memory only",
    "remember what i told you",
    "previously told",
    "according to memory",
    "根据记忆",
    "基于记忆",
    "只根据记忆",
    "只基于记忆",
    "你还记得",
    "我之前告诉过",
    "之前说过",
    "长期记忆",
)

DEFAULT_SKIP_PATTERNS: Tuple[str, ...] = (
    "latest news",
    "today weather",
    "weather today",
    "whats the weather",
    "current price",
    "stock price",
    "crypto price",
    "search web",
    "browse web",
    "run command",
    "execute command",
    "shell command",
    "npm run",
    "git ",
    "最新新闻",
    "今天天气",
    "实时价格",
    "执行命令",
    "跑一下命令",
    "查一下最新",
    "查今日",
)


@dataclass
class GateConfig:
    force_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_FORCE_PATTERNS))
    skip_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_SKIP_PATTERNS))
    threshold: int = 3
    ambiguity_low: int = 1
    ambiguity_high: int = 2


@dataclass(frozen=True)
class LlmGateResult:
    need_memory: bool
    reason: str
    raw: str


_QUOTES_RE = re.compile(r"[“”‘’\"'`]")
# \w 覆盖 Unicode 字母与数字，下划线单独去掉
_NON_WORD_RE = re.compile(r"[^\w\s]|_")
_SPACES_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    lowered = text.lower().replace("　", " ")
    lowered = _QUOTES_RE.sub("", lowered)
    lowered = _NON_WORD_RE.sub(" ", lowered)
    return _SPACES_RE.sub(" ", lowered).strip()


def _normalize_patterns(patterns: Sequence[str]) -> List[str]:
    normalized = (normalize_text(p) for p in patterns)
    return [p for p in normalized if p]


def _first_hit(text: str, patterns: Sequence[str]) -> Optional[str]:
    for pattern in patterns:
        if pattern and pattern in text:
            return pattern
    return None


def clamp_ambiguity_range(threshold: int, low: int, high: int) -> Tuple[int, int]:
    """把模糊区间限制在 [0, threshold-1] 内，并保证 low <= high。"""

    capped = max(1, int(threshold))
    floor_low = max(0, int(low))
    floor_high = max(0, int(high))
    ordered_low, ordered_high = min(floor_low, floor_high), max(floor_low, floor_high)
    return min(ordered_low, capped - 1), min(ordered_high, capped - 1)


def score_text(text: str) -> Tuple[int, List[str]]:
    """对已规范化文本按词表累加权重，返回 (分数, 命中原因列表)。"""

    score = 0
    reasons: List[str] = []
    for entry in POSITIVE_PATTERNS + NEGATIVE_PATTERNS:
        if entry.pattern in text:
            score += entry.weight
            reasons.append(entry.reason)
    return score, reasons


def evaluate(message: str, config: GateConfig) -> GateVerdict:
    """对一条消息给出 yes / no / ambiguous 判定，纯函数，无副作用。"""

    normalized = normalize_text(message)
    threshold = max(1, int(config.threshold))
    low, high = clamp_ambiguity_range(threshold, config.ambiguity_low, config.ambiguity_high)

    force_hit = _first_hit(normalized, _normalize_patterns(config.force_patterns))
    if force_hit:
        return GateVerdict("yes", f"force_pattern:{force_hit}", threshold + 1)

    skip_hit = _first_hit(normalized, _normalize_patterns(config.skip_patterns))
    if skip_hit:
        return GateVerdict("no", f"skip_pattern:{skip_hit}", -1)

    score, reasons = score_text(normalized)
    matched = f" matched=[{','.join(reasons)}]"

    if score >= threshold:
        return GateVerdict("yes", f"rule_score_yes:{score}/threshold={threshold}{matched}", score)
    if low <= score <= high:
        return GateVerdict("ambiguous", f"rule_score_ambiguous:{score}/range={low}-{high}{matched}", score)
    return GateVerdict("no", f"rule_score_no:{score}/threshold={threshold}{matched}", score)


def build_llm_gate_prompt(agent_id: str, message: str) -> str:
    template = load_prompt("prefetch_gate")
    return template.replace("{agent_id}", agent_id).replace("{message}", message)


def extract_json_object(raw: str) -> Optional[str]:
    """返回 raw 中第一个括号平衡的 {...} 子串；忽略字符串字面量内部的括号。"""

    start = raw.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(raw)):
            ch = raw[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return raw[start:idx + 1]
        start = raw.find("{", start + 1)
    return None


def parse_llm_gate_result(raw: str) -> LlmGateResult:
    extracted = extract_json_object(raw or "")
    if extracted is None:
        raise ParseError(code="JSON_NOT_FOUND", message="llm_gate_no_json")
    try:
        parsed = json.loads(extracted)
    except json.JSONDecodeError as exc:
        raise ParseError(code="JSON_INVALID", message=f"llm_gate_bad_json: {exc}")
    if not isinstance(parsed, dict):
        raise ParseError(code="JSON_INVALID", message="llm_gate_not_object")
    need_memory = parsed.get("need_memory") is True
    reason = parsed.get("reason")
    reason = reason.strip() if isinstance(reason, str) else ""
    return LlmGateResult(
        need_memory=need_memory,
        reason=reason or ("llm_need_memory" if need_memory else "llm_no_memory"),
        raw=extracted,
    )
