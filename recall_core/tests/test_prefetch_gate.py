import pytest

from recall_core.domain.exceptions import ParseError
from recall_core.gate.prefetch_gate import (
    GateConfig,
    build_llm_gate_prompt,
    clamp_ambiguity_range,
    evaluate,
    normalize_text,
    parse_llm_gate_result,
    score_text,
)


def test_normalize_text():
    assert normalize_text("What’s  the　WEATHER?!") == "whats the weather"
    assert normalize_text("  你还记得吗？ ") == "你还记得吗"
    assert normalize_text("snake_case-word") == "snake case word"


def test_force_pattern_scenario():
    v = evaluate("please answer based on memory", GateConfig())
    assert v.verdict == "yes"
    assert v.reason.startswith("force_pattern:")
    assert v.score == 4


def test_skip_pattern_scenario():
    v = evaluate("what's the weather today", GateConfig())
    assert v.verdict == "no"
    assert v.reason.startswith("skip_pattern:")
    assert v.score == -1


def test_force_wins_over_skip_and_score():
    v = evaluate("Based on memory, any latest news?", GateConfig())
    assert v.verdict == "yes"
    assert v.reason == "force_pattern:based on memory"


def test_chinese_force_pattern():
    v = evaluate("你还记得我的猫叫什么吗", GateConfig())
    assert v.verdict == "yes"


def test_score_yes():
    v = evaluate("recall our earlier chat about memory", GateConfig())
    assert v.verdict == "yes"
    assert v.score == 6
    assert v.reason.startswith("rule_score_yes:6/threshold=3")
    assert "kw_recall" in v.reason and "kw_earlier_chat" in v.reason


def test_score_ambiguous():
    v = evaluate("do you remember my dog", GateConfig())
    assert v.verdict == "ambiguous"
    assert v.score == 2
    assert v.reason == "rule_score_ambiguous:2/range=1-2 matched=[kw_remember]"


def test_score_no_lists_empty_matches():
    v = evaluate("hello there", GateConfig())
    assert v.verdict == "no"
    assert v.score == 0
    assert v.reason == "rule_score_no:0/threshold=3 matched=[]"


@pytest.mark.parametrize(
    "message",
    [
        "hello there",
        "do you remember",
        "google the stock price",
        "recall what we discussed",
        "shell access and memory",
        "天气怎么样 记得带伞",
    ],
)
def test_verdict_follows_score(message):
    cfg = GateConfig(force_patterns=[], skip_patterns=[])
    score, _ = score_text(normalize_text(message))
    v = evaluate(message, cfg)
    assert v.score == score
    if score >= 3:
        assert v.verdict == "yes"
    elif 1 <= score <= 2:
        assert v.verdict == "ambiguous"
    else:
        assert v.verdict == "no"


def test_clamp_ambiguity_range():
    assert clamp_ambiguity_range(3, 5, 0) == (0, 2)
    assert clamp_ambiguity_range(1, 1, 2) == (0, 0)
    assert clamp_ambiguity_range(4, -2, 1) == (0, 1)


def test_threshold_floor_is_one():
    v = evaluate("hello", GateConfig(force_patterns=[], skip_patterns=[], threshold=0))
    assert v.verdict == "no"
    assert "threshold=1" in v.reason


def test_build_llm_gate_prompt():
    prompt = build_llm_gate_prompt("alice", "do you remember my dog")
    assert "alice" in prompt
    assert "do you remember my dog" in prompt
    assert "need_memory" in prompt


def test_parse_llm_gate_result():
    r = parse_llm_gate_result('sure: {"need_memory": true, "reason": "asks about past"} thanks')
    assert r.need_memory is True
    assert r.reason == "asks about past"

    r = parse_llm_gate_result('{"need_memory": false}')
    assert r.need_memory is False
    assert r.reason == "llm_no_memory"

    r = parse_llm_gate_result('{"reason": "a } b", "need_memory": true}')
    assert r.need_memory is True
    assert r.reason == "a } b"


def test_parse_llm_gate_result_errors():
    with pytest.raises(ParseError) as exc:
        parse_llm_gate_result("no json here")
    assert exc.value.code == "JSON_NOT_FOUND"

    with pytest.raises(ParseError) as exc:
        parse_llm_gate_result('{"need_memory": tru')
    assert exc.value.code == "JSON_NOT_FOUND"

    with pytest.raises(ParseError) as exc:
        parse_llm_gate_result("{need_memory: true}")
    assert exc.value.code == "JSON_INVALID"
