from pathlib import Path

import pytest

from provisioner.config import (
    DEFAULT_MODEL,
    DEFAULT_PORT,
    _expand_env,
    describe,
    load_defaults_file,
    resolve_config,
)
from provisioner.errors import ConfigError


def test_system_defaults():
    cfg = resolve_config({"GW_BIND": "loopback"}, current_user="root", user_home=Path("/root"))
    assert cfg.mode == "system"
    assert cfg.service_user == "openclaw"
    assert cfg.home == Path("/var/lib/openclaw")
    assert cfg.port == DEFAULT_PORT
    assert cfg.auth_mode == "token"
    assert cfg.dm_policy == "pairing"
    assert cfg.group_policy == "allowlist"
    assert cfg.model == DEFAULT_MODEL
    assert cfg.gateway_token_file == Path("/etc/openclaw/gateway.token")
    assert cfg.telegram_token_file == Path("/etc/openclaw/telegram.bot_token")
    assert cfg.unit_path == Path("/etc/systemd/system/openclaw-gateway.service")
    assert cfg.config_file == Path("/var/lib/openclaw/.openclaw/openclaw.json")


def test_user_mode_defaults_follow_invoking_user(tmp_path):
    cfg = resolve_config(
        {"OC_MODE": "user", "GW_BIND": "loopback"},
        current_user="alice",
        user_home=tmp_path,
    )
    assert cfg.service_user == "alice"
    assert cfg.home == tmp_path
    assert cfg.secrets_dir == tmp_path / ".config" / "openclaw"
    assert cfg.unit_path == tmp_path / ".config" / "systemd" / "user" / "openclaw-gateway.service"


def test_user_mode_rejects_other_service_user(tmp_path):
    with pytest.raises(ConfigError, match="differs from the invoking user"):
        resolve_config(
            {"OC_MODE": "user", "OC_USER": "bob", "GW_BIND": "loopback"},
            current_user="alice",
            user_home=tmp_path,
        )


def test_bind_is_required():
    with pytest.raises(ConfigError) as exc_info:
        resolve_config({}, current_user="root", user_home=Path("/root"))
    assert "GW_BIND" in str(exc_info.value)
    assert "GW_BIND=loopback" in exc_info.value.hint


def test_custom_bind_requires_host():
    with pytest.raises(ConfigError, match="GW_CUSTOM_BIND_HOST"):
        resolve_config({"GW_BIND": "custom"}, current_user="root", user_home=Path("/root"))


@pytest.mark.parametrize("port", ["0", "65536", "http", "-1"])
def test_invalid_port_rejected(port):
    with pytest.raises(ConfigError):
        resolve_config({"GW_BIND": "loopback", "GW_PORT": port}, current_user="root", user_home=Path("/root"))


@pytest.mark.parametrize(
    "key,value",
    [("GW_BIND", "everywhere"), ("GW_AUTH", "none"), ("DM_POLICY", "maybe"), ("OC_MODE", "cluster")],
)
def test_enum_values_validated(key, value):
    env = {"GW_BIND": "loopback", key: value}
    with pytest.raises(ConfigError, match=key):
        resolve_config(env, current_user="root", user_home=Path("/root"))


def test_non_http_ollama_url_rejected():
    with pytest.raises(ConfigError, match="OLLAMA_URL"):
        resolve_config(
            {"GW_BIND": "loopback", "OLLAMA_URL": "unix:///run/ollama.sock"},
            current_user="root",
            user_home=Path("/root"),
        )


def test_expand_env_forms():
    env = {"A": "1", "B": "two"}
    assert _expand_env("$A-${B}", env) == "1-two"
    assert _expand_env("${MISSING:-fallback}", env) == "fallback"
    assert _expand_env("${MISSING}", env) == "${MISSING}"


def test_defaults_file_interpolates_and_env_wins(tmp_path):
    path = tmp_path / "defaults.yaml"
    path.write_text(
        "GW_BIND: lan\n"
        "GW_PORT: 19000\n"
        "OLLAMA_MODEL: \"${PREFERRED_MODEL:-qwen2.5:7b}\"\n"
        "OC_WITH_OLLAMA: false\n"
    )
    env = {"PREFERRED_MODEL": "mistral:7b", "GW_PORT": "18800"}
    cfg = resolve_config(env, config_path=path, current_user="root", user_home=Path("/root"))
    assert cfg.bind == "lan"
    assert cfg.port == 18800
    assert cfg.model == "mistral:7b"
    assert cfg.with_ollama is False


def test_defaults_file_via_env_variable(tmp_path):
    path = tmp_path / "defaults.yaml"
    path.write_text("GW_BIND: tailnet\n")
    cfg = resolve_config(
        {"OC_PROVISION_CONFIG": str(path)}, current_user="root", user_home=Path("/root")
    )
    assert cfg.bind == "tailnet"


def test_defaults_file_must_be_mapping(tmp_path):
    path = tmp_path / "defaults.yaml"
    path.write_text("- GW_BIND\n- loopback\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_defaults_file(path, {})


def test_missing_defaults_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_defaults_file(tmp_path / "nope.yaml", {})


def test_describe_never_contains_telegram_token():
    cfg = resolve_config(
        {"GW_BIND": "loopback", "TELEGRAM_BOT_TOKEN": "123456:ABCdef"},
        current_user="root",
        user_home=Path("/root"),
    )
    summary = describe(cfg)
    assert summary["telegram_token_supplied"] is True
    assert "123456:ABCdef" not in repr(summary)
    assert "123456:ABCdef" not in repr(cfg)


def test_ollama_locality():
    base = {"GW_BIND": "loopback"}
    local = resolve_config(base, current_user="root", user_home=Path("/root"))
    remote = resolve_config(
        {**base, "OLLAMA_URL": "http://gpu-box:11434/"}, current_user="root", user_home=Path("/root")
    )
    assert local.ollama_is_local
    assert not remote.ollama_is_local
    assert remote.ollama_url == "http://gpu-box:11434"
