import pytest

from converge.config import ApplySettings, Settings, load_settings
from converge.errors import ConfigError


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        settings = load_settings()
        assert settings == Settings()
        assert settings.apply.parallelism == 4
        assert settings.providers["default"]["plugin"] == "sandbox"

    def test_reads_default_file(self, tmp_path, monkeypatch):
        (tmp_path / "converge.yaml").write_text("apply:\n  parallelism: 8\nstate:\n  lock_timeout: 30\n")
        monkeypatch.chdir(tmp_path)
        settings = load_settings()
        assert settings.apply.parallelism == 8
        assert settings.apply.max_attempts == ApplySettings().max_attempts
        assert settings.state.lock_timeout == 30.0
        assert settings.source == "converge.yaml"

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("providers:\n  aws:\n    plugin: memory\n")
        settings = load_settings(str(path))
        assert settings.providers == {"aws": {"plugin": "memory"}}

    def test_unknown_section(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("backend:\n  type: s3\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("apply:\n  workers: 3\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))

    def test_bad_type(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("apply:\n  parallelism: many\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))

    def test_parallelism_must_be_positive(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("apply:\n  parallelism: 0\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("apply: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))
