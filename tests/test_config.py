"""Tests for configuration loading, validation and host binding."""
import pytest

from server_config_backup.config import (
    BackupConfig,
    BindingMode,
    BindingStatus,
    load_config,
    load_or_create,
    parse_config,
    resolve_binding,
    save_config,
    with_webhook,
)
from server_config_backup.errors import ConfigurationError, HostnameMismatch


class TestRepositoryUrl:
    """Remote URLs must be ssh-identity@host:path/repo.git."""

    @pytest.mark.parametrize("url", [
        "git@github.com:org/configs.git",
        "deploy@git.internal.example:infra/server-configs.git",
        "backup_user@10.0.0.5:srv/repos/web01.git",
    ])
    def test_accepts_ssh_urls(self, url):
        config = parse_config(f"repository:\n  url: '{url}'\n")
        assert config.repository.url == url

    @pytest.mark.parametrize("url", [
        "https://github.com/org/configs.git",
        "ssh://git@github.com/org/configs.git",
        "git@github.com:org/configs",
        "github.com:org/configs.git",
        "git@github.com:org/configs.git; rm -rf /",
        "file:///srv/configs.git",
    ])
    def test_rejects_everything_else(self, url):
        with pytest.raises(ConfigurationError):
            parse_config(f"repository:\n  url: '{url}'\n")

    def test_empty_url_means_local_only(self):
        config = parse_config("repository:\n  url: ''\n")
        assert config.repository.url is None


class TestBackupPaths:
    """Tests for backup path validation."""

    def test_plain_strings_and_mappings(self):
        config = parse_config(
            "backup:\n"
            "  paths:\n"
            "    - /etc/mysql/\n"
            "    - path: /etc/php\n"
            "      excludes: ['*.bak']\n"
        )
        paths = config.backup.paths
        assert [p.path for p in paths] == ["/etc/mysql", "/etc/php"]
        assert paths[0].name == "mysql"
        assert config.backup.excludes_for(paths[1])[-1] == "*.bak"

    @pytest.mark.parametrize("path", ["etc/mysql", "/etc/../root", "/"])
    def test_rejects_unsafe_paths(self, path):
        with pytest.raises(ConfigurationError):
            parse_config(f"backup:\n  paths: ['{path}']\n")

    def test_rejects_colliding_base_names(self):
        with pytest.raises(ConfigurationError, match="share the base name"):
            parse_config("backup:\n  paths: [/etc/php, /opt/php]\n")

    def test_find_by_name_or_path(self):
        config = parse_config("backup:\n  paths: [/etc/mysql, /etc/php]\n")
        assert config.backup.find("php").path == "/etc/php"
        assert config.backup.find("/etc/mysql/").name == "mysql"
        assert config.backup.find("nginx") is None


class TestParsing:
    """Tests for YAML parsing and persistence."""

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_config("backup:\n  pathz: [/etc/mysql]\n")

    def test_invalid_yaml(self):
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            parse_config("backup: [unclosed\n")

    def test_non_mapping(self):
        with pytest.raises(ConfigurationError):
            parse_config("- just\n- a list\n")

    def test_empty_document_gives_defaults(self):
        config = parse_config("")
        assert config.webhook.retry_count == 3
        assert config.backup.backup_user == "backup-service"
        assert "*.log" in config.backup.exclude_patterns

    def test_webhook_enabled_requires_url(self):
        with pytest.raises(ConfigurationError):
            parse_config("webhook:\n  enabled: true\n")

    def test_unknown_webhook_event(self):
        with pytest.raises(ConfigurationError):
            parse_config("webhook:\n  events: [backup_success, coffee_ready]\n")

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "config.yaml"
        config = with_webhook(BackupConfig(), "https://hooks.example.com/x", ["drift_detected"])
        save_config(config, path)

        loaded = load_config(path)
        assert loaded == config
        assert loaded.webhook.enabled

    def test_load_or_create_writes_defaults(self, tmp_path):
        path = tmp_path / "sub" / "config.yaml"
        config = load_or_create(path)
        assert path.exists()
        assert load_config(path) == config

    def test_with_webhook_validates(self):
        with pytest.raises(ConfigurationError):
            with_webhook(BackupConfig(), "ftp://nope", None)


class TestHostBinding:
    """Tests for hostname binding."""

    def test_new_installation_binds(self):
        config, status = resolve_binding(BackupConfig(), hostname="web01", config_exists=False)
        assert status == BindingStatus.NEW
        assert config.system.bound_hostname == "web01"
        assert config.system.system_id.startswith("web01-")

    def test_existing_unbound_config_auto_binds(self):
        config, status = resolve_binding(BackupConfig(), hostname="web01")
        assert status == BindingStatus.UNBOUND
        assert config.hostname == "web01"

    def test_matching_host(self):
        bound, _ = resolve_binding(BackupConfig(), hostname="web01")
        config, status = resolve_binding(bound, hostname="web01")
        assert status == BindingStatus.MATCHED
        assert config is bound

    def test_mismatch_aborts(self):
        bound, _ = resolve_binding(BackupConfig(), hostname="web01")
        with pytest.raises(HostnameMismatch, match="web01"):
            resolve_binding(bound, hostname="web02")

    @pytest.mark.parametrize("mode", [BindingMode.RECOVERY, BindingMode.FORCE])
    def test_override_modes_keep_binding(self, mode):
        bound, _ = resolve_binding(BackupConfig(), hostname="web01")
        config, status = resolve_binding(bound, mode=mode, hostname="web02")
        assert status == BindingStatus.MISMATCHED
        assert config.hostname == "web01"

    def test_rebind_keeps_system_id(self):
        bound, _ = resolve_binding(BackupConfig(), hostname="web01")
        config, status = resolve_binding(bound, mode=BindingMode.REBIND, hostname="web02")
        assert status == BindingStatus.REBOUND
        assert config.hostname == "web02"
        assert config.system.system_id == bound.system.system_id
