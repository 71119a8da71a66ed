import pydantic
import pytest

from chat_core.config.settings import Settings
from chat_core.domain.exceptions import ValidationError
from chat_core.prompts import load_system_prompt, render_prompt


def test_settings_defaults_and_bounds(monkeypatch):
    monkeypatch.delenv("MAX_STEPS", raising=False)
    monkeypatch.setenv("CHAT_CORE_CONFIG_FILE", "/nonexistent/config.yaml")
    cfg = Settings()
    assert cfg.max_steps == 25
    assert cfg.session_backend in {"memory", "json"}
    with pytest.raises(pydantic.ValidationError):
        Settings(max_steps=0)
    with pytest.raises(pydantic.ValidationError):
        Settings(openai_api_key="short")


def test_settings_yaml_and_env(monkeypatch, tmp_path):
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text("max_steps: 7\nsession_backend: json\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CORE_CONFIG_FILE", str(cfg_file))
    monkeypatch.delenv("MAX_STEPS", raising=False)
    monkeypatch.delenv("SESSION_BACKEND", raising=False)
    assert Settings().max_steps == 7
    monkeypatch.setenv("MAX_STEPS", "9")
    cfg = Settings()
    assert cfg.max_steps == 9
    assert cfg.session_backend == "json"


def test_prompt_loading_and_rendering():
    template = load_system_prompt()
    assert "{assistant_name}" in template
    text = render_prompt(template, {"assistant_name": "Nemo"})
    assert text.startswith("You are Nemo")
    with pytest.raises(ValidationError):
        render_prompt("Hello {who}")
    with pytest.raises(ValidationError):
        load_system_prompt("missing")
