# tests/test_logging_config.py
import json
import logging

import pytest

from logging_config import AUDIT_LOGGERS, JSONFormatter, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_root = root.handlers[:]
    saved_audit = {name: logging.getLogger(name).handlers[:] for name in AUDIT_LOGGERS}
    yield
    root.handlers[:] = saved_root
    for name, handlers in saved_audit.items():
        logging.getLogger(name).handlers[:] = handlers


class TestLogging:

    def test_json_formatter_carries_context(self):
        record = logging.LogRecord("dosing_safety", logging.INFO, __file__, 10, "Dose logged", None, None)
        record.patient_id = 7
        record.medication_id = "65a1b2c3d4e5f60718293a4b"

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Dose logged"
        assert entry["level"] == "INFO"
        assert entry["patient_id"] == 7
        assert entry["medication_id"] == "65a1b2c3d4e5f60718293a4b"
        assert "request_id" not in entry

    def test_setup_creates_log_files(self, tmp_path, restore_logging):
        setup_logging(str(tmp_path))
        logging.getLogger("dosing_safety").info("Safety check for Metformin", extra={"medication_id": "abc"})
        for handler in logging.getLogger("dosing_safety").handlers + logging.getLogger().handlers:
            handler.flush()

        assert (tmp_path / "medtrack.log").exists()
        assert (tmp_path / "errors.log").exists()
        audit_lines = (tmp_path / "dosing_audit.log").read_text().splitlines()
        assert json.loads(audit_lines[-1])["medication_id"] == "abc"
