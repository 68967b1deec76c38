import json
import sys

import pytest

from conftest import FakeRunner, install_tool, tool_failure
from recall_core.domain.models import PrefetchTier
from recall_core.retrieval.orchestrator import RetrievalOrchestrator
from recall_core.tools.context_tool import ContextToolClient


TRANSCRIPT = """# Recall Session (@bot)

- started_at: 2026-01-01T00:00:00.000Z
------

## Turn 2026-01-01T00:01:00.000Z

- message_id: m1
- source: external

### User

my cat is Miso

### Assistant

Nice name!
"""

SEARCH_PAYLOAD = json.dumps({
    "result": {
        "memories": [
            {"uri": "viking://mem/c", "score": 0.5, "abstract": "third"},
            {"uri": "viking://mem/a", "score": 0.9, "abstract": "first"},
        ],
        "resources": [{"uri": "viking://res/b", "score": 0.7, "overview": "second"}],
        "skills": [],
    }
})


def build(cfg, runner):
    install_tool(cfg, "bot")
    return RetrievalOrchestrator(cfg, tool_factory=lambda agent_id: ContextToolClient(agent_id, cfg, runner=runner))


@pytest.mark.asyncio
async def test_native_tier_keeps_top_hits(make_settings):
    cfg = make_settings(native_search=True, prefetch_max_hits=2)
    runner = FakeRunner({"search": SEARCH_PAYLOAD})
    result = await build(cfg, runner).fetch("bot", "what is my cat called", session_id="s-1")
    assert result.tier is PrefetchTier.NATIVE
    assert "viking://mem/a" in result.block and "viking://res/b" in result.block
    assert "viking://mem/c" not in result.block
    assert result.hit_distribution == {"memory": 1, "resource": 1, "skill": 0}
    assert result.diagnostics == ["native_search_hits=3", "session_id_used=1"]
    assert result.fallback_reason is None
    assert runner.calls[0]["args"][1:5] == ["search", "what is my cat called", "--limit", "12"]


@pytest.mark.asyncio
async def test_native_error_falls_back_to_legacy(make_settings):
    cfg = make_settings(native_search=True)
    runner = FakeRunner({
        "search": tool_failure("search exploded"),
        "find-uris": "0.9\tviking://sessions/bot/closed/1.md\n",
        "read": TRANSCRIPT,
    })
    result = await build(cfg, runner).fetch("bot", "cat name")
    assert result.tier is PrefetchTier.LEGACY
    assert any(d.startswith("native_search_error=") for d in result.diagnostics)
    assert result.fallback_reason == "native_search_no_hits_or_error"
    assert "my cat is Miso" in result.block
    assert "find_total=1" in result.diagnostics


@pytest.mark.asyncio
async def test_full_text_fallback_when_lookup_finds_nothing(make_settings):
    cfg = make_settings()
    runner = FakeRunner({"find-uris": "", "read": TRANSCRIPT})
    result = await build(cfg, runner).fetch("bot", "cat name")
    active = f"{cfg.session_root}/bot/active.md"
    assert result.tier is PrefetchTier.LEGACY
    assert "native_search_disabled" in result.diagnostics
    assert result.fallback_reason == "native_search_flag_disabled"
    assert f"{active}:find=0" in result.diagnostics
    assert any(d.startswith(f"{active}:fallback_chars=") and d.endswith("turns=1") for d in result.diagnostics)
    # 两个目标读到同一轮，去重后只保留一条
    assert result.block.count("my cat is Miso") == 1


@pytest.mark.asyncio
async def test_everything_empty_returns_none(make_settings):
    cfg = make_settings(native_search=True)
    runner = FakeRunner({"search": "{}", "find-uris": tool_failure(), "read": tool_failure()})
    result = await build(cfg, runner).fetch("bot", "cat name")
    assert result.tier is PrefetchTier.NONE
    assert result.block == ""
    assert "native_search_empty" in result.diagnostics
    assert f"{cfg.session_root}/bot/closed:find_error" in result.diagnostics
    assert f"{cfg.session_root}/bot/closed:fallback_error" in result.diagnostics


@pytest.mark.asyncio
async def test_native_block_over_budget_falls_through(make_settings):
    cfg = make_settings(native_search=True, prefetch_max_chars=200)
    huge = json.dumps({"memories": [{"uri": "viking://m", "score": 1, "abstract": "x" * 500}]})
    runner = FakeRunner({"search": huge, "find-uris": "", "read": ""})
    result = await build(cfg, runner).fetch("bot", "q")
    assert "native_search_over_budget" in result.diagnostics
    assert result.tier is PrefetchTier.NONE


@pytest.mark.asyncio
async def test_disabled_and_missing_tool(make_settings):
    cfg = make_settings(prefetch=False)
    result = await RetrievalOrchestrator(cfg).fetch("bot", "q")
    assert result.diagnostics == ["prefetch_disabled"]

    cfg = make_settings()
    result = await RetrievalOrchestrator(cfg).fetch("bot", "q")
    assert result.tier is PrefetchTier.NONE
    assert result.diagnostics == ["tool_missing"]


READ_ONLY_TOOL = f'''
import sys
if sys.argv[1] == "read":
    print({TRANSCRIPT!r})
'''


@pytest.mark.asyncio
async def test_nul_in_query_falls_back_to_full_text(make_settings):
    cfg = make_settings(native_search=True, tool_command=sys.executable, tool_relpath="tools/read_only.py")
    install_tool(cfg, "bot", READ_ONLY_TOOL)
    result = await RetrievalOrchestrator(cfg).fetch("bot", "what did i\x00say")
    assert result.diagnostics[0] == "native_search_error=TOOL_SPAWN_ERROR"
    assert f"{cfg.session_root}/bot/active.md:find_error" in result.diagnostics
    assert result.tier is PrefetchTier.LEGACY
    assert "my cat is Miso" in result.block


@pytest.mark.asyncio
async def test_unexpected_search_error_is_a_diagnostic(make_settings):
    cfg = make_settings(native_search=True)
    runner = FakeRunner({"search": RuntimeError("tool crashed"), "find-uris": "", "read": TRANSCRIPT})
    result = await build(cfg, runner).fetch("bot", "cat name")
    assert result.diagnostics[0] == "native_search_error=RuntimeError"
    assert result.tier is PrefetchTier.LEGACY
    assert result.fallback_reason == "native_search_no_hits_or_error"
