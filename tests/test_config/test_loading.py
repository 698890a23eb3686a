from pathlib import Path

import pytest

import threadpilot.config as config_module
from threadpilot.config import Config
from threadpilot.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("agent:\n  max_iterations: 5\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "agent:\n"
            "  max_iterations: 7\n"
            "models:\n"
            "  allowed:\n"
            "    - provider: openai\n"
            "      model: gpt-4o-mini\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.agent.max_iterations == 7
    assert len(cfg.models.allowed) == 1
    assert cfg.models.allowed[0].provider == "openai"


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "checkpoints:\n"
            "  max_per_thread: 12\n"
            "approval:\n"
            "  yolo_mode: true\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.checkpoints.max_per_thread == 12
    assert cfg.approval.yolo_mode is True


def test_missing_config_file_uses_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 20
    assert cfg.agent.max_files_read_per_query == 10
    assert cfg.agent.chat_retries == 3
    assert cfg.agent.max_fallback_models == 10
    assert cfg.checkpoints.max_per_thread == 50
    assert cfg.checkpoints.max_total_size_mb == 100.0
    assert cfg.cache.message_prep_ttl == 5.0
    assert cfg.cache.message_prep_max_entries == 50
    assert cfg.cache.plan_cache_ttl == 0.1
    assert cfg.approval.auto_approve == {"edits": False, "terminal": False, "MCP tools": False}


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("THREADPILOT_AGENT__CHAT_RETRIES", "5")

    cfg = Config.load()

    assert cfg.agent.chat_retries == 5


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.agent.max_iterations = 3
    cfg.approval.auto_approve["terminal"] = True

    target = tmp_path / "nested" / "config.yaml"
    cfg.save(target)
    loaded = Config.from_yaml(target)

    assert loaded.agent.max_iterations == 3
    assert loaded.approval.auto_approve["terminal"] is True


def test_invalid_settings_raise_configuration_error(tmp_path: Path):
    bad_value = tmp_path / "bad_value.yaml"
    bad_value.write_text("agent:\n  max_iterations: plenty\n", encoding="utf-8")
    broken_yaml = tmp_path / "broken.yaml"
    broken_yaml.write_text("agent: [unclosed\n", encoding="utf-8")
    not_a_mapping = tmp_path / "list.yaml"
    not_a_mapping.write_text("- agent\n- cache\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="max_iterations"):
        Config.from_yaml(bad_value)
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.from_yaml(broken_yaml)
    with pytest.raises(ConfigurationError, match="must hold a mapping"):
        Config.from_yaml(not_a_mapping)
