from pathlib import Path

import pytest

from stagehand_automation.config import StagehandConfig, load_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.conf")
    assert isinstance(config, StagehandConfig)
    assert config.playbook == Path("/etc/stagehand/site.yml")
    assert config.inventory is None
    assert config.forks == 5
    assert config.host_key_checking is True


def test_load_config_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(
        """
        [defaults]
        playbook = "/opt/stagehand/site.yml"
        inventory = "/opt/stagehand/inventory.toml"
        forks = 10
        any_errors_fatal = true
        run_timeout = 600
        report_file = "/var/lib/stagehand/last-run.json"
        remote_user = "ubuntu"
        ssh_timeout = 15
        host_key_checking = false
        plugin_dirs = "/opt/stagehand/plugins"
        plugin_modules = ["site_ops.extra"]
        aws_region = "ap-southeast-2"
        aws_profile = "myprofile"
        """
    )

    config = load_config(cfg_path)
    assert config.playbook == Path("/opt/stagehand/site.yml")
    assert config.inventory == Path("/opt/stagehand/inventory.toml")
    assert config.forks == 10
    assert config.any_errors_fatal is True
    assert config.run_timeout == 600.0
    assert config.report_file == Path("/var/lib/stagehand/last-run.json")
    assert config.remote_user == "ubuntu"
    assert config.ssh_timeout == 15.0
    assert config.host_key_checking is False
    assert config.plugin_dirs == [Path("/opt/stagehand/plugins")]
    assert config.plugin_modules == ["site_ops.extra"]
    assert config.aws_region == "ap-southeast-2"
    assert config.aws_profile == "myprofile"


def test_private_key_expands_home(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text('[defaults]\nprivate_key = "~/.ssh/id_ed25519"\n')

    assert load_config(cfg_path).private_key == str(tmp_path / ".ssh" / "id_ed25519")


def test_invalid_toml_raises_value_error(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text("[defaults\nforks = ")

    with pytest.raises(ValueError):
        load_config(cfg_path)
