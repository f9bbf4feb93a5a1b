import json
import stat

import pytest

from provisioner.appconfig import (
    Override,
    apply_overrides,
    desired_document,
    merge,
    normalize_auth,
    planned_overrides,
    reconcile_config,
    reconcile_document,
    render_baseline,
)
from provisioner.errors import PreconditionError

OPENCLAW = "/opt/openclaw/bin/openclaw"


def _read(path):
    return json.loads(path.read_text())


@pytest.mark.parametrize("port,bind", [(18789, "loopback"), (19001, "lan"), (443, "tailnet")])
def test_port_and_bind_written_verbatim(make_cfg, host, port, bind):
    cfg = make_cfg(GW_PORT=port, GW_BIND=bind)
    change = reconcile_document(cfg, host, telegram_enabled=False)
    doc = _read(cfg.config_file)
    assert change.changed
    assert doc["gateway"]["port"] == port
    assert doc["gateway"]["bind"] == bind
    assert doc["gateway"]["auth"] == {"mode": "token"}


def test_custom_bind_carries_host(make_cfg):
    cfg = make_cfg(GW_BIND="custom", GW_CUSTOM_BIND_HOST="10.0.0.5")
    doc = render_baseline(cfg, telegram_enabled=False)
    assert doc["gateway"]["customBindHost"] == "10.0.0.5"


def test_written_config_is_owner_only(make_cfg, host):
    cfg = make_cfg()
    reconcile_document(cfg, host, telegram_enabled=False)
    assert stat.S_IMODE(cfg.config_file.stat().st_mode) == 0o600
    assert (cfg.config_file, cfg.service_user, None) in host.chowns


@pytest.mark.parametrize("legacy", ["token", "password", "", None])
def test_scalar_auth_coerced_to_object(legacy):
    doc = {"gateway": {"auth": legacy}}
    assert normalize_auth(doc)
    assert isinstance(doc["gateway"]["auth"], dict)
    assert doc["gateway"]["auth"]["mode"] in ("token", "password")


def test_object_auth_left_alone():
    doc = {"gateway": {"auth": {"mode": "password", "extra": 1}}}
    assert not normalize_auth(doc)
    assert doc["gateway"]["auth"] == {"mode": "password", "extra": 1}


def test_merge_keeps_unknown_keys():
    base = {"gateway": {"port": 1, "tls": {"enabled": True}}, "agents": {"x": 1}}
    out = merge(base, {"gateway": {"port": 2}})
    assert out == {"gateway": {"port": 2, "tls": {"enabled": True}}, "agents": {"x": 1}}
    assert base["gateway"]["port"] == 1


def test_existing_config_backed_up_and_merged(make_cfg, host):
    cfg = make_cfg(GW_PORT=18800)
    cfg.config_dir.mkdir(parents=True)
    cfg.config_file.write_text(json.dumps({
        "gateway": {"port": 18789, "auth": "token"},
        "agents": {"defaults": {"workspace": "/srv/ws"}},
    }))

    change = reconcile_document(cfg, host, telegram_enabled=False)

    assert change.changed
    assert change.backup == cfg.config_dir / f"openclaw.json.bak.{cfg.run_stamp}"
    assert _read(change.backup)["gateway"]["port"] == 18789
    doc = _read(cfg.config_file)
    assert doc["gateway"]["port"] == 18800
    assert doc["gateway"]["auth"] == {"mode": "token"}
    assert doc["agents"]["defaults"]["workspace"] == "/srv/ws"


def test_unchanged_config_not_rewritten(make_cfg, host):
    cfg = make_cfg()
    reconcile_document(cfg, host, telegram_enabled=False)
    before = cfg.config_file.stat().st_mtime_ns

    change = reconcile_document(cfg, host, telegram_enabled=False)

    assert not change.changed
    assert change.backup is None
    assert cfg.config_file.stat().st_mtime_ns == before
    assert not list(cfg.config_dir.glob("openclaw.json.bak.*"))


def test_invalid_json_is_backed_up_and_replaced(make_cfg, host):
    cfg = make_cfg()
    cfg.config_dir.mkdir(parents=True)
    cfg.config_file.write_text("{not json")

    change = reconcile_document(cfg, host, telegram_enabled=False)

    assert change.backup.read_text() == "{not json"
    assert _read(cfg.config_file)["gateway"]["bind"] == "loopback"


def test_symlinked_config_file_is_refused(make_cfg, host, tmp_path):
    cfg = make_cfg(GW_PORT=18800)
    victim = tmp_path / "shadow"
    victim.write_text('{"gateway": {"port": 1}}')
    victim.chmod(0o640)
    cfg.config_dir.mkdir(parents=True)
    cfg.config_file.symlink_to(victim)

    with pytest.raises(PreconditionError, match="symlink") as exc_info:
        reconcile_document(cfg, host, telegram_enabled=False)

    assert exc_info.value.stage == "config"
    assert victim.read_text() == '{"gateway": {"port": 1}}'
    assert stat.S_IMODE(victim.stat().st_mode) == 0o640
    assert not list(cfg.config_dir.glob("openclaw.json.bak.*"))
    assert host.chowns == []


def test_symlinked_config_dir_is_refused(make_cfg, host, tmp_path):
    cfg = make_cfg()
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    cfg.home.mkdir(parents=True, exist_ok=True)
    cfg.config_dir.symlink_to(elsewhere)

    with pytest.raises(PreconditionError, match="symlink"):
        reconcile_document(cfg, host, telegram_enabled=False)

    assert list(elsewhere.iterdir()) == []


def test_telegram_disabled_drops_stale_fields(make_cfg):
    cfg = make_cfg()
    current = {"channels": {"telegram": {"enabled": True, "tokenFile": "/old", "dmPolicy": "open"}}}
    doc = desired_document(cfg, telegram_enabled=False, current=current)
    assert doc["channels"]["telegram"] == {"enabled": False}


def test_telegram_enabled_points_at_token_file(make_cfg):
    cfg = make_cfg(DM_POLICY="allowlist", GROUP_POLICY="disabled")
    doc = render_baseline(cfg, telegram_enabled=True)
    tg = doc["channels"]["telegram"]
    assert tg == {
        "enabled": True,
        "tokenFile": str(cfg.telegram_token_file),
        "dmPolicy": "allowlist",
        "groupPolicy": "disabled",
    }


def test_baseline_never_contains_secret_values(make_cfg):
    cfg = make_cfg(TELEGRAM_BOT_TOKEN="123:very-secret")
    text = json.dumps(render_baseline(cfg, telegram_enabled=True))
    assert "very-secret" not in text


def test_planned_overrides_cover_model_provider(make_cfg):
    cfg = make_cfg(OLLAMA_MODEL="qwen2.5:7b")
    keys = {o.key: o.value for o in planned_overrides(cfg, telegram_enabled=False)}
    assert keys["gateway.auth.mode"] == "token"
    assert keys["channels.telegram.enabled"] is False
    assert keys["models.providers.ollama.baseUrl"] == "http://127.0.0.1:11434/v1"
    assert keys["agents.defaults.model.primary"] == "ollama/qwen2.5:7b"
    assert "channels.telegram.tokenFile" not in keys


def test_planned_overrides_without_ollama(make_cfg):
    cfg = make_cfg(OC_WITH_OLLAMA="no")
    keys = [o.key for o in planned_overrides(cfg, telegram_enabled=True)]
    assert not [k for k in keys if k.startswith("models.")]
    assert "channels.telegram.tokenFile" in keys


def test_override_cli_values():
    assert Override("gateway.port", 18789).cli_value() == "18789"
    assert Override("channels.telegram.enabled", False).cli_value() == "false"
    assert Override("gateway.bind", "lan").cli_value() == "lan"


def test_override_failures_are_tolerated(make_cfg, host):
    cfg = make_cfg()
    host.rejected_keys = {"models.providers.ollama.api"}

    report = apply_overrides(cfg, host, OPENCLAW, planned_overrides(cfg, False))

    assert [r.key for r in report.failed] == ["models.providers.ollama.api"]
    assert "Unknown config key" in report.failed[0].error
    assert len(report.applied) == len(report.results) - 1
    # every override is attempted, as the service user
    calls = host.ran_openclaw("config", "set")
    assert len(calls) == len(report.results)
    assert {c.user for c in calls} == {cfg.service_user}
    assert calls[0].env["OPENCLAW_CONFIG_PATH"] == str(cfg.config_file)


def test_auth_repaired_after_overrides(make_cfg, host):
    cfg = make_cfg()

    def clobber(key, value):
        # an older CLI writing gateway.auth as a bare string
        if key == "gateway.auth.mode":
            doc = _read(cfg.config_file)
            doc["gateway"]["auth"] = value
            cfg.config_file.write_text(json.dumps(doc))

    host.on_config_set = clobber

    report = reconcile_config(cfg, host, OPENCLAW, telegram_enabled=False)

    assert report.auth_repaired
    assert _read(cfg.config_file)["gateway"]["auth"] == {"mode": "token"}


def test_reconcile_config_rerun_is_quiet(make_cfg, host):
    cfg = make_cfg()
    reconcile_config(cfg, host, OPENCLAW, telegram_enabled=False)
    report = reconcile_config(cfg, host, OPENCLAW, telegram_enabled=False)
    assert not report.change.changed
    assert not report.auth_repaired
