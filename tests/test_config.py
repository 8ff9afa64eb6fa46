"""Tests for configuration loading and accessors."""

import json

from playlist_ingest.services.config_service import ConfigService


def _service(tmp_path, raw=None):
    if raw is not None:
        (tmp_path / "config.json").write_text(raw)
    svc = ConfigService(str(tmp_path))
    svc.load()
    return svc


class TestConfigService:
    def test_defaults_without_file(self, tmp_path):
        svc = _service(tmp_path)
        assert svc.options.fetch_max_retries == 3
        assert svc.batch_size == 500

    def test_batch_size_is_clamped(self, tmp_path):
        assert _service(tmp_path, json.dumps({"options": {"batch_size": 5000}})).batch_size == 500
        assert _service(tmp_path, json.dumps({"options": {"batch_size": 0}})).batch_size == 1
        assert _service(tmp_path, json.dumps({"options": {"batch_size": 50}})).batch_size == 50

    def test_broken_file_falls_back_to_defaults(self, tmp_path):
        svc = _service(tmp_path, "{not json")
        assert svc.options.batch_size == 500

    def test_save_and_reload(self, tmp_path):
        svc = _service(tmp_path)
        svc.config.options.epg_retention_days = 3
        svc.save()
        assert ConfigService(str(tmp_path)).reload().options.epg_retention_days == 3
