from datetime import datetime, timezone

from recall_core.domain.models import ConversationTurn
from recall_core.infrastructure.storage.transcript_store import LegacyTranscriptStore, safe_timestamp
from recall_core.retrieval.formatting import parse_session_turns


def _turn(message_id, user, assistant, internal=False):
    return ConversationTurn(
        message_id=message_id,
        timestamp_utc=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
        user_text=user,
        assistant_text=assistant,
        is_internal=internal,
    )


def test_append_and_parse_round_trip(tmp_path):
    store = LegacyTranscriptStore(tmp_path)
    path = store.append_turn("bot", _turn("m1", "hello", "hi there"))
    store.append_turn("bot", _turn("m2", "ping", "pong", internal=True))
    assert path == tmp_path / "bot" / ".recall" / "runtime" / "context" / "active-session.md"

    content = store.read("bot")
    assert content.startswith("# Recall Session (@bot)")
    assert "- started_at: " in content
    assert "- source: internal" in content

    turns = parse_session_turns(content)
    assert [(t.message_id, t.user, t.assistant) for t in turns] == [("m1", "hello", "hi there"), ("m2", "ping", "pong")]
    assert turns[0].timestamp == "2026-01-01T12:00:00.000Z"


def test_close_and_remove(tmp_path):
    store = LegacyTranscriptStore(tmp_path)
    assert store.close("bot") is None

    store.append_turn("bot", _turn("m1", "hello", "bye"))
    ended_at = store.close("bot")
    assert ended_at is not None
    content = store.read("bot")
    assert content.rstrip().endswith(f"- ended_at: {ended_at}")
    assert parse_session_turns(content)[0].assistant == "bye"

    store.remove("bot")
    assert not store.path_for("bot").exists()
    store.remove("bot")


def test_safe_timestamp():
    assert safe_timestamp("2026-01-01T12:00:00.000Z") == "2026-01-01T12-00-00-000Z"
