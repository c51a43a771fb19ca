import pytest
from pydantic import ValidationError

from chat_core.config.settings import Settings


def test_defaults_match_wire_contract(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(tmp_path / "missing.yaml"))
    cfg = Settings()
    assert cfg.api_url.endswith("/chat/completions")
    assert cfg.thinking_type == "disabled"
    assert cfg.credential_key != cfg.history_key


def test_yaml_config_and_env_precedence(monkeypatch, tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("model: yaml-model\nsystem_prompt: from yaml\nhttp_timeout: 5\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(config))
    monkeypatch.setenv("MODEL", "env-model")

    cfg = Settings()

    assert cfg.model == "env-model"
    assert cfg.system_prompt == "from yaml"
    assert cfg.http_timeout == 5.0


def test_short_api_key_rejected(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ValidationError):
        Settings(api_key="short")


def test_storage_keys_must_be_plain_names(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ValidationError):
        Settings(history_key="../escape")
