import pytest

from recall_core.agents.context_engine import ContextEngine
from recall_core.api import service
from recall_core.domain.models import InboundMessage


@pytest.fixture
def default_engine(make_settings, monkeypatch):
    engine = ContextEngine(make_settings(gate_mode="never"))
    monkeypatch.setattr(service, "_engine", engine)
    yield engine
    service.reset_default_engine()


@pytest.mark.asyncio
async def test_entry_points_use_default_engine(default_engine):
    inbound = InboundMessage(agent_id="bot", channel="telegram", sender_id="u1", message_id="m1")

    augmented, state = await service.before_model(inbound, "hello")
    assert augmented == "hello"
    assert await service.after_model(inbound, augmented, "hi", state) == ["session_native_disabled"]
    await service.reset_session(inbound)
    await service.shutdown()

    assert service.get_default_engine() is default_engine
    health = service.health()
    assert health["status"] == "ok"
    assert health["details"]["gate_mode"] == "never"
    assert health["details"]["pending_sync_chains"] == 0
