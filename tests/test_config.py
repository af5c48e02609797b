"""
Tests for the configuration store and value validation.
"""

import json
import os
from pathlib import Path

import pytest
import yaml

from serversh.core.config.defaults import DEFAULT_CONFIG
from serversh.core.config.store import ConfigStore, deep_merge
from serversh.core.config.validation import validate_config_values
from serversh.core.errors import ConfigError, PermissionDeniedError


def _bump_mtime(path: Path) -> None:
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 2_000_000_000))


class TestInit:
    def test_creates_default_document(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        store = ConfigStore(path)
        store.init()
        assert path.is_file()
        data = yaml.safe_load(path.read_text())
        assert set(data) >= {"serversh", "modules", "system", "security", "container", "monitoring"}
        assert store.get("security.ssh.port") == 2222

    def test_keeps_existing_file(self, config_path: Path):
        store = ConfigStore(config_path)
        store.load()
        store.set("serversh.parallel_jobs", 8)
        again = ConfigStore(config_path)
        again.init()
        assert again.get("serversh.parallel_jobs") == 8

    def test_missing_section_rejected(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"serversh": {}, "modules": {}}))
        with pytest.raises(ConfigError, match="system"):
            ConfigStore(path).load()

    def test_malformed_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("serversh: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid configuration syntax"):
            ConfigStore(path).load()

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="Expected a mapping"):
            ConfigStore(path).load()

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigStore(tmp_path / "nope.yaml").load()

    def test_json_document(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(DEFAULT_CONFIG))
        store = ConfigStore(path)
        store.load()
        store.set("serversh.timeout", 600)
        assert json.loads(path.read_text())["serversh"]["timeout"] == 600

    def test_access_before_load(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not loaded"):
            ConfigStore(tmp_path / "c.yaml").get("serversh.log_level")


class TestGetSet:
    @pytest.fixture
    def store(self, config_path: Path) -> ConfigStore:
        s = ConfigStore(config_path)
        s.load()
        return s

    def test_dotted_get(self, store: ConfigStore):
        assert store.get("serversh.log_level") == "info"
        assert store.get("container.docker.daemon_config.mtu") == 1450

    def test_default_for_missing(self, store: ConfigStore):
        assert store.get("nope.nothing", "fallback") == "fallback"
        assert store.get("serversh.log_level.deeper", 1) == 1

    def test_has(self, store: ConfigStore):
        assert store.has("security.ssh.port")
        assert not store.has("security.ssh.nonexistent")

    def test_set_persists(self, store: ConfigStore, config_path: Path):
        store.set("serversh.parallel_jobs", 8)
        assert store.get("serversh.parallel_jobs") == 8
        assert yaml.safe_load(config_path.read_text())["serversh"]["parallel_jobs"] == 8

    def test_set_creates_intermediate_mappings(self, store: ConfigStore):
        store.set("modules.container/docker.channel", "stable")
        assert store.module_config("container/docker") == {"channel": "stable"}

    def test_set_through_scalar_rejected(self, store: ConfigStore):
        with pytest.raises(ConfigError, match="not a mapping"):
            store.set("serversh.log_level.sub", 1)

    def test_set_invalid_value_leaves_file_untouched(self, store: ConfigStore, config_path: Path):
        before = config_path.read_text()
        with pytest.raises(ConfigError) as exc:
            store.set("security.ssh.port", 70000)
        assert any("security.ssh.port" in e for e in exc.value.errors)
        assert config_path.read_text() == before
        assert store.get("security.ssh.port") == 2222

    def test_set_backs_up_previous_file(self, store: ConfigStore, config_path: Path):
        store.set("serversh.timeout", 120)
        backups = list(config_path.parent.glob("config.yaml.backup.*"))
        assert backups

    def test_module_config_with_dotted_name(self, store: ConfigStore, config_path: Path):
        store.set_module_config("web/nginx-1.2", "workers", 4)
        assert yaml.safe_load(config_path.read_text())["modules"]["web/nginx-1.2"] == {"workers": 4}
        assert store.module_config("web/nginx-1.2") == {"workers": 4}
        assert store.module_config("web/nginx-1") == {}

    def test_unwritable_file(self, store: ConfigStore, monkeypatch):
        def deny(*args, **kwargs):
            raise PermissionError("read-only")

        monkeypatch.setattr("serversh.core.config.store.atomic_write_text", deny)
        with pytest.raises(PermissionDeniedError, match="Cannot write configuration file"):
            store.set("serversh.timeout", 120)

    def test_returned_values_are_copies(self, store: ConfigStore):
        enabled = store.get("modules.enabled")
        enabled.append("mutated")
        assert store.get("modules.enabled") == []

    def test_external_edit_invalidates_cache(self, store: ConfigStore, config_path: Path):
        assert store.get("serversh.timeout") == 300
        data = yaml.safe_load(config_path.read_text())
        data["serversh"]["timeout"] = 900
        config_path.write_text(yaml.safe_dump(data))
        _bump_mtime(config_path)
        assert store.get("serversh.timeout") == 900


class TestModuleLists:
    @pytest.fixture
    def store(self, config_path: Path) -> ConfigStore:
        s = ConfigStore(config_path)
        s.load()
        return s

    def test_enable_disable(self, store: ConfigStore):
        store.enable_module("system/update")
        store.enable_module("system/update")
        assert store.enabled_modules() == ["system/update"]

        store.disable_module("system/update")
        assert store.enabled_modules() == []
        assert store.disabled_modules() == ["system/update"]

        store.enable_module("system/update")
        assert store.disabled_modules() == []

    def test_overlay_lists_are_not_persisted(self, config_path: Path):
        profiles = config_path.parent / "profiles"
        profiles.mkdir()
        (profiles / "docker.yaml").write_text(yaml.safe_dump({
            "modules": {"enabled": ["container/docker"], "disabled": ["monitoring/node"]},
        }))
        store = ConfigStore(config_path)
        store.load()
        store.apply_profile("docker")

        store.enable_module("system/update")

        on_disk = yaml.safe_load(config_path.read_text())["modules"]
        assert on_disk["enabled"] == ["system/update"]
        assert on_disk["disabled"] == []
        assert store.enabled_modules() == ["container/docker"]


class TestTypedSettings:
    @pytest.fixture
    def store(self, config_path: Path) -> ConfigStore:
        s = ConfigStore(config_path)
        s.load()
        return s

    def test_defaults(self, store: ConfigStore):
        engine = store.engine_settings()
        assert engine.parallel_jobs == 4
        assert engine.module_timeout == 1800
        modules = store.modules_settings()
        assert modules.fail_fast is True
        assert modules.auto_dependencies is True

    def test_strings_are_coerced(self, store: ConfigStore, config_path: Path):
        data = yaml.safe_load(config_path.read_text())
        data["modules"]["fail_fast"] = "false"
        data["modules"]["auto_dependencies"] = "no"
        data["serversh"]["parallel_jobs"] = "2"
        config_path.write_text(yaml.safe_dump(data))
        store.load()

        assert store.validate_values().valid
        assert store.modules_settings().fail_fast is False
        assert store.modules_settings().auto_dependencies is False
        assert store.engine_settings().parallel_jobs == 2

    def test_invalid_section(self, store: ConfigStore, config_path: Path):
        data = yaml.safe_load(config_path.read_text())
        data["modules"]["fail_fast"] = "sometimes"
        config_path.write_text(yaml.safe_dump(data))
        store.load()

        with pytest.raises(ConfigError, match="Invalid configuration section: modules") as exc:
            store.modules_settings()
        assert exc.value.errors[0].startswith("modules.fail_fast:")


class TestValidation:
    def test_defaults_are_valid(self):
        result = validate_config_values(DEFAULT_CONFIG)
        assert result.valid
        assert result.errors == []

    def test_collects_every_violation(self):
        data = deep_merge(DEFAULT_CONFIG, {
            "serversh": {"log_level": "loud", "parallel_jobs": 99, "timeout": 5},
            "security": {"ssh": {"port": 0}},
        })
        result = validate_config_values(data)
        assert not result.valid
        joined = "\n".join(result.errors)
        assert "serversh.log_level" in joined
        assert "serversh.parallel_jobs" in joined
        assert "serversh.timeout" in joined
        assert "security.ssh.port" in joined
        assert len(result.errors) == 4

    @pytest.mark.parametrize("level", ["debug", "INFO", "warn", "error", "fatal", "0", 4])
    def test_log_level_vocabulary(self, level):
        data = deep_merge(DEFAULT_CONFIG, {"serversh": {"log_level": level}})
        assert validate_config_values(data).valid

    def test_docker_mtu_only_checked_when_enabled(self):
        data = deep_merge(DEFAULT_CONFIG, {"container": {"docker": {"daemon_config": {"mtu": 100}}}})
        assert validate_config_values(data).valid

        data["container"]["docker"]["enabled"] = True
        result = validate_config_values(data)
        assert any("daemon_config.mtu" in e for e in result.errors)

    def test_enabled_and_disabled_warns(self):
        data = deep_merge(DEFAULT_CONFIG, {"modules": {"enabled": ["a"], "disabled": ["a"]}})
        result = validate_config_values(data)
        assert result.valid
        assert result.warnings == ["Module 'a' is both enabled and disabled"]

    def test_ensure_valid_raises_with_all_errors(self, config_path: Path):
        data = yaml.safe_load(config_path.read_text())
        data["serversh"]["parallel_jobs"] = 0
        data["serversh"]["timeout"] = 10_000
        config_path.write_text(yaml.safe_dump(data))

        store = ConfigStore(config_path)
        store.load()
        with pytest.raises(ConfigError) as exc:
            store.ensure_valid()
        assert len(exc.value.errors) == 2


class TestProfiles:
    def test_create_and_list(self, config_path: Path):
        store = ConfigStore(config_path)
        store.load()
        path = store.create_profile("web", "web servers")
        assert path == config_path.parent / "profiles" / "web.yaml"
        assert "web servers" in path.read_text()
        assert store.list_profiles() == ["web"]

    def test_apply_overlay(self, config_path: Path):
        profiles = config_path.parent / "profiles"
        profiles.mkdir()
        (profiles / "docker.yaml").write_text(yaml.safe_dump({
            "modules": {"enabled": ["container/docker"]},
            "container": {"docker": {"enabled": True}},
        }))
        store = ConfigStore(config_path)
        store.load()
        store.apply_profile("docker")

        assert store.enabled_modules() == ["container/docker"]
        assert store.get("container.docker.enabled") is True
        # Sibling keys survive the deep merge
        assert store.get("container.docker.daemon_config.mtu") == 1450
        # Not persisted
        assert yaml.safe_load(config_path.read_text())["modules"]["enabled"] == []
        assert store.applied_profiles == ["docker"]

    def test_overlay_survives_reload(self, config_path: Path):
        profiles = config_path.parent / "profiles"
        profiles.mkdir()
        (profiles / "fast.yaml").write_text(yaml.safe_dump({"serversh": {"parallel_jobs": 12}}))
        store = ConfigStore(config_path)
        store.load()
        store.apply_profile("fast")
        store.set("serversh.timeout", 120)
        assert store.get("serversh.parallel_jobs") == 12
        assert yaml.safe_load(config_path.read_text())["serversh"]["parallel_jobs"] == 4

    def test_apply_persisted(self, config_path: Path):
        profiles = config_path.parent / "profiles"
        profiles.mkdir()
        (profiles / "p.yml").write_text(yaml.safe_dump({"serversh": {"timeout": 900}}))
        store = ConfigStore(config_path)
        store.load()
        store.apply_profile("p", persist=True)
        assert yaml.safe_load(config_path.read_text())["serversh"]["timeout"] == 900

    def test_unknown_profile(self, config_path: Path):
        store = ConfigStore(config_path)
        store.load()
        with pytest.raises(ConfigError, match="Profile not found"):
            store.apply_profile("ghost")

    def test_merge_file(self, config_path: Path, tmp_path: Path):
        extra = tmp_path / "extra.yaml"
        extra.write_text(yaml.safe_dump({"security": {"ssh": {"port": 2200}}}))
        store = ConfigStore(config_path)
        store.load()
        store.merge(extra)
        assert store.get("security.ssh.port") == 2200
        assert store.get("security.ssh.permit_root_login") is False


class TestDeepMerge:
    def test_lists_replaced(self):
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_nested(self):
        base = {"a": {"b": 1, "c": 2}}
        assert deep_merge(base, {"a": {"c": 3}}) == {"a": {"b": 1, "c": 3}}
        assert base == {"a": {"b": 1, "c": 2}}


class TestReporting:
    def test_summary_and_export(self, config_path: Path, tmp_path: Path):
        store = ConfigStore(config_path)
        store.load()
        summary = store.summary()
        assert summary["ssh_port"] == 2222
        assert summary["enabled_modules"] == []

        out = tmp_path / "export.json"
        store.export(out)
        assert json.loads(out.read_text())["serversh"]["log_level"] == "info"

    def test_cleanup_removes_old_backups(self, config_path: Path):
        store = ConfigStore(config_path)
        store.load()
        store.set("serversh.timeout", 120)
        backups = list(config_path.parent.glob("config.yaml.backup.*"))
        old = backups[0]
        os.utime(old, (0, 0))
        assert store.cleanup(days=30) >= 1
        assert not old.exists()
