from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from pool_router.config import ApiKeyConfig, ModelMappingRule, ProxyConfig, ProxyConfigFile
from pool_router.errors import ConfigError
from pool_router.settings import Settings, get_settings


def test_defaults_match_documented_values() -> None:
    config = ProxyConfig()

    assert config.host == "127.0.0.1"
    assert config.port == 5580
    assert config.enable_multi_account is True
    assert config.log_requests is True
    assert config.max_retries == 3
    assert config.retry_delay_ms == 1000
    assert config.thinking_output_format == "reasoning_content"
    assert config.auto_continue_rounds == 0
    assert config.model_cache_ttl_sec == 300
    assert config.token_refresh_before_expiry_sec == 300
    assert config.cooldown_max_sec == 3600


def test_camel_case_payload_is_accepted_and_emitted() -> None:
    config = ProxyConfig.model_validate(
        {
            "autoStart": True,
            "authEnabled": True,
            "maxRetries": 5,
            "selectedAccountIds": ["a"],
            "thinkingOutputFormat": "think",
            "modelMappings": [
                {"id": "r1", "sourceModel": "gpt-4", "targetModels": ["claude"]},
            ],
        }
    )

    payload = config.to_payload()

    assert config.auto_start is True
    assert config.max_retries == 5
    assert payload["selectedAccountIds"] == ["a"]
    assert payload["modelMappings"][0]["type"] == "replace"
    assert "auto_start" not in payload


def test_config_is_immutable_and_replace_returns_validated_copy() -> None:
    config = ProxyConfig(port=6000)

    with pytest.raises(ValidationError):
        config.port = 7000  # type: ignore[misc]
    updated = config.replace(port=7000)

    assert config.port == 6000
    assert updated.port == 7000
    with pytest.raises(ValidationError):
        config.replace(port=70000)


def test_effective_max_attempts_is_at_least_one() -> None:
    assert ProxyConfig(max_retries=0).effective_max_attempts == 1
    assert ProxyConfig(max_retries=4).effective_max_attempts == 4


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        ProxyConfig(thinking_output_format="xml")
    with pytest.raises(ValidationError):
        ModelMappingRule(id="r1", source_model="gpt-4", target_models=["  "])
    with pytest.raises(ValidationError):
        ModelMappingRule(id="r1", source_model="gpt-4", target_models=["a"], weights=[0])
    with pytest.raises(ValidationError):
        ApiKeyConfig(id="k1", key="   ")


def test_duplicate_api_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        ProxyConfig(
            api_keys=[
                ApiKeyConfig(id="k1", key="same-key-value"),
                ApiKeyConfig(id="k2", key="same-key-value"),
            ]
        )


def test_blank_legacy_api_key_becomes_none() -> None:
    assert ProxyConfig(api_key="   ").api_key is None


def test_preferred_endpoint_moves_to_front() -> None:
    config = ProxyConfig(
        upstream_endpoints={
            "primary": "https://primary.example.com/v1/",
            "backup": "https://backup.example.com/v1",
            "empty": "  ",
        },
        preferred_endpoint="Backup",
    )

    assert config.ordered_endpoints() == [
        ("backup", "https://backup.example.com/v1"),
        ("primary", "https://primary.example.com/v1"),
    ]


def test_config_file_saves_and_loads_kinds_independently(tmp_path: Path) -> None:
    config_file = ProxyConfigFile(tmp_path / "pool-router.yaml")

    config_file.save("kiro", ProxyConfig(port=6001, auth_enabled=True))
    config_file.save("antigravity", ProxyConfig(port=6002))

    assert config_file.load("kiro").port == 6001
    assert config_file.load("kiro").auth_enabled is True
    assert config_file.load("antigravity").port == 6002
    assert config_file.load("missing") == ProxyConfig()
    assert set(config_file.load_all()) == {"kiro", "antigravity"}

    raw = yaml.safe_load((tmp_path / "pool-router.yaml").read_text(encoding="utf-8"))
    assert raw["proxies"]["kiro"]["authEnabled"] is True


def test_config_file_reports_invalid_content(tmp_path: Path) -> None:
    path = tmp_path / "pool-router.yaml"

    path.write_text("proxies: [1, 2", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        ProxyConfigFile(path).load_all()

    path.write_text("proxies:\n  kiro:\n    port: not-a-port\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid proxy config for 'kiro'"):
        ProxyConfigFile(path).load("kiro")

    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Expected YAML object"):
        ProxyConfigFile(path).load_all()


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("PROXY_CONFIG_PATH", "/etc/pool-router.yaml")
    monkeypatch.setenv("PROXY_KINDS", "kiro, antigravity,")
    monkeypatch.setenv("STATE_DIR", "/var/lib/pool-router")
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    assert settings.proxy_config_path == "/etc/pool-router.yaml"
    assert settings.proxy_kinds_list == ["kiro", "antigravity"]
    assert str(settings.state_dir_for("kiro")) == "/var/lib/pool-router/kiro"


def test_credential_store_path_is_templated_per_kind() -> None:
    settings = Settings(credential_store_path="/data/{kind}/accounts.yaml")

    assert str(settings.credential_store_for("kiro")) == "/data/kiro/accounts.yaml"
