import pytest

from conftest import FakeRunner, install_tool
from recall_core.domain.exceptions import ParseError, ToolInvocationError
from recall_core.tools.context_tool import ContextToolClient, extract_session_id, parse_tool_json


def test_parse_tool_json():
    assert parse_tool_json("") == {}
    assert parse_tool_json('  {"a": 1}\n') == {"a": 1}
    assert parse_tool_json('{"id": "abc",}') == {"id": "abc"}
    assert parse_tool_json('[context-tool] connecting\n{"ok": true}') == {"ok": True}


def test_extract_session_id_precedence():
    assert extract_session_id({"id": "root", "result": {"id": "r"}}) == "root"
    assert extract_session_id({"result": {"id": "r"}, "data": {"id": "d"}}) == "r"
    assert extract_session_id({"id": "  ", "sessionId": " s "}) == "s"
    assert extract_session_id({"data": {"session_id": "d"}}) == "d"
    assert extract_session_id({"result": "x"}) is None
    assert extract_session_id([{"id": "x"}]) is None
    assert extract_session_id({"id": 42}) is None


@pytest.mark.asyncio
async def test_missing_tool_raises(make_settings):
    cfg = make_settings()
    client = ContextToolClient("bot", cfg, runner=FakeRunner())
    assert client.available is False
    with pytest.raises(ToolInvocationError) as exc:
        await client.read("x")
    assert exc.value.code == "TOOL_MISSING"


@pytest.mark.asyncio
async def test_search_arguments(make_settings):
    cfg = make_settings(prefetch_timeout_ms=1234)
    install_tool(cfg, "bot")
    runner = FakeRunner({"search": '{"result": {"memories": []}}'})
    client = ContextToolClient("bot", cfg, runner=runner)
    payload = await client.search("cats", limit=16, score_threshold="0.3", session_id="s-1")
    assert payload == {"result": {"memories": []}}
    call = runner.calls[0]
    assert call["command"] == "node"
    assert call["args"][1:] == ["search", "cats", "--limit", "16", "--score-threshold", "0.3", "--session-id", "s-1", "--json"]
    assert call["cwd"] == client.workdir
    assert call["timeout_ms"] == 1234


@pytest.mark.asyncio
async def test_find_uris_parses_lines(make_settings):
    cfg = make_settings()
    install_tool(cfg, "bot")
    output = "[context-tool] searching\n0.8\tviking://a\nbad line\n\tno-score\nx\tviking://b\n0.5\t \n"
    client = ContextToolClient("bot", cfg, runner=FakeRunner({"find-uris": output}))
    assert await client.find_uris("q", "/t", 12) == [(0.8, "viking://a"), (0.0, "viking://b")]


@pytest.mark.asyncio
async def test_read_ignores_tool_log_output(make_settings):
    cfg = make_settings()
    install_tool(cfg, "bot")
    client = ContextToolClient("bot", cfg, runner=FakeRunner({"read": "[context-tool] not found\n"}))
    assert await client.read("viking://a") == ""


@pytest.mark.asyncio
async def test_session_create_and_commit(make_settings):
    cfg = make_settings(commit_timeout_ms=9999)
    install_tool(cfg, "bot")
    runner = FakeRunner({"session-create": '{"data": {"sessionId": "s-9"}}', "session-commit": "{}"})
    client = ContextToolClient("bot", cfg, runner=runner)
    assert await client.session_create("bot", "telegram", "u1") == "s-9"
    assert runner.calls[0]["args"][1:] == [
        "session-create", "--agent-id", "bot", "--channel", "telegram", "--sender-id", "u1", "--json",
    ]
    await client.session_commit("s-9")
    assert runner.calls[1]["timeout_ms"] == 9999


@pytest.mark.asyncio
async def test_session_create_without_id(make_settings):
    cfg = make_settings()
    install_tool(cfg, "bot")
    client = ContextToolClient("bot", cfg, runner=FakeRunner({"session-create": '{"ok": true}'}))
    with pytest.raises(ParseError) as exc:
        await client.session_create("bot", "telegram", "u1")
    assert exc.value.code == "SESSION_ID_MISSING"
