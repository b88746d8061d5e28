"""Tests for :mod:`toolrelay.settings`."""

from __future__ import annotations

from pathlib import Path

import pytest

from toolrelay import settings as settings_module
from toolrelay.settings import EngineSettings, SettingsError, load_settings


@pytest.fixture(autouse=True)
def _no_user_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings_module, "DEFAULT_SETTINGS_PATH", tmp_path / "absent.yaml")


class TestEngineSettings:
    def test_defaults(self) -> None:
        settings = EngineSettings()
        assert settings.default_timeout == 30.0
        assert settings.max_retries == 2
        assert settings.auto_approve is False

    def test_retry_cap_is_enforced(self) -> None:
        assert EngineSettings(max_retries=9).max_retries == 2
        assert EngineSettings(max_retries=-1).max_retries == 0

    def test_parallelism_floor(self) -> None:
        assert EngineSettings(max_parallelism=0).max_parallelism == 1

    def test_with_overrides_returns_copy(self) -> None:
        base = EngineSettings()
        changed = base.with_overrides(auto_approve=True)
        assert changed.auto_approve is True
        assert base.auto_approve is False
        assert changed.to_dict()["auto_approve"] is True


class TestLoadSettings:
    def test_no_file_no_env_gives_defaults(self) -> None:
        assert load_settings(environ={}) == EngineSettings()

    def test_env_overrides(self) -> None:
        env = {
            "TOOLRELAY_AUTO_APPROVE": "yes",
            "TOOLRELAY_DEFAULT_TIMEOUT": "12.5",
            "TOOLRELAY_MAX_PARALLELISM": "8",
            "TOOLRELAY_WEB_CACHE_SIZE": "not-a-number",
        }
        settings = load_settings(environ=env)
        assert settings.auto_approve is True
        assert settings.default_timeout == 12.5
        assert settings.max_parallelism == 8
        assert settings.web_cache_size == EngineSettings().web_cache_size

    def test_yaml_file_then_env(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("engine:\n  max_retries: 1\n  default_timeout: 5\n  mystery: true\n", encoding="utf-8")
        settings = load_settings(path, environ={"TOOLRELAY_DEFAULT_TIMEOUT": "7"})
        assert settings.max_retries == 1
        assert settings.default_timeout == 7.0

    def test_settings_path_from_env(self, tmp_path: Path) -> None:
        path = tmp_path / "custom.yaml"
        path.write_text("auto_approve: true\n", encoding="utf-8")
        settings = load_settings(environ={"TOOLRELAY_SETTINGS": str(path)})
        assert settings.auto_approve is True

    def test_json_is_valid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text('{"max_block_chars": 1024}', encoding="utf-8")
        assert load_settings(path, environ={}).max_block_chars == 1024

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path, environ={}) == EngineSettings()

    @pytest.mark.parametrize("content", ["- a\n- b\n", "engine: [1, 2]\n", "key: [unclosed\n"])
    def test_malformed_files_raise(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(SettingsError):
            load_settings(path, environ={})

    def test_missing_explicit_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(SettingsError):
            load_settings(tmp_path / "missing.yaml", environ={})
