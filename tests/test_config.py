import json
import logging

import pytest

from meterd.daemon.errors import InsufficientCredits
from meterd.daemon.utils.config_loader import ConfigLoader
from meterd.daemon.utils.logging_config import JSONFormatter, StructuredLogger


def _loader(tmp_path, text=None):
    loader = ConfigLoader()
    loader.config_dir = tmp_path
    loader.config_file = tmp_path / "ledger.yaml"
    if text is not None:
        loader.config_file.write_text(text)
    return loader


class TestConfigReloadSafety:
    """Reload is atomic: a bad file never replaces a good config."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = _loader(tmp_path).load_config()
        assert config.settlement.attempts == 5
        assert config.driver.default_max_attempts == 3
        assert config.features == {}

    def test_valid_config_loads(self, tmp_path):
        loader = _loader(tmp_path, """
version: 1
settlement:
  attempts: 7
driver:
  batch_size: 20
features:
  analyze:
    estimate: 5
""")
        config = loader.load_config()
        assert config.settlement.attempts == 7
        assert config.driver.batch_size == 20
        assert config.recovery.pending_ttl_seconds == 3600
        assert loader.estimate_for("analyze") == 5
        assert loader.estimate_for("unknown") is None

    def test_invalid_reload_keeps_previous(self, tmp_path):
        loader = _loader(tmp_path, "version: 1\nfeatures:\n  analyze:\n    estimate: 5\n")
        loader.load_config()

        loader.config_file.write_text("version: 1\nfeatures:\n  analyze:\n    estimate: -3\n")
        with pytest.raises(ValueError, match="previous config retained"):
            loader.load_config()
        assert loader.get().estimate_for("analyze") == 5

    def test_invalid_first_load_has_no_fallback(self, tmp_path):
        loader = _loader(tmp_path, "version: 2\n")
        with pytest.raises(ValueError, match="no fallback"):
            loader.load_config()

    def test_config_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("METERD_CONFIG_DIR", str(tmp_path))
        loader = ConfigLoader()
        assert loader.config_file == tmp_path / "ledger.yaml"


class TestStructuredLogging:
    def test_extra_fields_are_emitted_as_json(self):
        record = logging.LogRecord("meterd.test", logging.INFO, __file__, 1, "Credits reserved", None, None)
        record.extra_fields = {"operation_id": "op-1", "estimate": 5}
        payload = json.loads(JSONFormatter().format(record))
        assert payload["message"] == "Credits reserved"
        assert payload["level"] == "INFO"
        assert payload["operation_id"] == "op-1"
        assert payload["estimate"] == 5

    def test_ledger_logs_denials(self, memory_ledger, caplog):
        caplog.set_level(logging.WARNING)
        with pytest.raises(InsufficientCredits):
            memory_ledger.start("alice", "analyze", 5)
        denied = [r for r in caplog.records if r.getMessage() == "Reservation denied"]
        assert denied
        assert denied[0].extra_fields["estimate"] == 5

    def test_structured_logger_namespace(self):
        assert StructuredLogger("x").logger.name == "meterd.x"
