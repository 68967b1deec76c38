import logging

from recall_core.infrastructure.logging.logger import LOGGER_NAME
from recall_core.sync import synchronizer


def test_sync_log_fields_reach_record(caplog):
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        synchronizer._log(logging.WARNING, "native_session_write_failed=X", "bot", role="assistant")

    record = caplog.records[-1]
    assert record.name == LOGGER_NAME
    assert record.levelno == logging.WARNING
    assert record.extra == {"agent_id": "bot", "role": "assistant"}
