import json
from pathlib import Path

from stagehand_automation import cli
from stagehand_automation.runner import HostRecap
from stagehand_automation.types import ActionResult

LOCAL_PLAYBOOK = """
- hosts: all
  gather_facts: no
  tasks:
    - name: say hello
      debug:
        msg: hello
"""


def test_format_result_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="local", action="file", changed=False, details="boom", failed=True)
    line = cli.format_result(result)
    assert line.startswith("local::file failed - boom")


def test_format_result_success(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="local", action="package", changed=True, details="installed", resource="nginx")
    line = cli.format_result(result)
    assert line.startswith("local::package[nginx] changed - installed")


def test_format_result_unreachable_and_skipped(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    down = ActionResult(host="ubu2", action="connect", changed=False, details="unreachable: timed out", failed=True)
    skipped = ActionResult(host="ubu2", action="ufw", changed=False, details="skipped", skipped=True)

    assert cli.format_result(down) == "ubu2::connect unreachable - unreachable: timed out"
    assert cli.format_result(skipped) == "ubu2::ufw skipped - skipped"


def test_format_recap(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    line = cli.format_recap("ubu1", HostRecap(ok=12, changed=3, skipped=2))
    assert line.split() == [
        "ubu1", ":", "ok=12", "changed=3", "unreachable=0", "failed=0", "skipped=2", "rescued=0", "ignored=0"
    ]


def test_progress_resource_prefers_name():
    assert cli._progress_resource({"name": ["nginx", "mysql-server", "php-fpm", "php-mysql"]}) == (
        "nginx, mysql-server, php-fpm, ..."
    )
    assert cli._progress_resource({"dest": "/etc/fail2ban/jail.local"}) == "/etc/fail2ban/jail.local"
    assert cli._progress_resource({}) is None


def test_main_runs_local_playbook(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    playbook = tmp_path / "site.yml"
    playbook.write_text(LOCAL_PLAYBOOK)
    report = tmp_path / "report.json"

    code = cli.main([str(playbook), "--config", str(tmp_path / "missing.conf"), "--report", str(report)])

    out = capsys.readouterr().out
    assert code == 0
    assert "ok=1 changed=0" in out
    assert "Hosts: 1 | Changes: 0 | Skipped: 0 | Failures: 0" in out
    data = json.loads(report.read_text())
    assert data["exit_code"] == 0
    assert data["recap"]["local"]["ok"] == 1


def test_main_reports_failed_host(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    playbook = tmp_path / "site.yml"
    playbook.write_text(LOCAL_PLAYBOOK + "      failed_when: true\n")

    code = cli.main([str(playbook), "--config", str(tmp_path / "missing.conf"), "--check"])

    out = capsys.readouterr().out
    assert code == 2
    assert "local::debug failed - hello (failed_when matched)" in out
    assert "(check mode)" in out


def test_main_rejects_invalid_playbook(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    playbook = tmp_path / "broken.yml"
    playbook.write_text("- hosts: all\n  tasks:\n    - name: nope\n      frobnicate: yes\n")

    code = cli.main([str(playbook), "--config", str(tmp_path / "missing.conf")])

    assert code == 1
    assert "Playbook validation failed" in capsys.readouterr().err


def test_main_rejects_invalid_config(tmp_path: Path, capsys):
    cfg = tmp_path / "main.conf"
    cfg.write_text("[defaults\n")

    assert cli.main(["--config", str(cfg)]) == 1
    assert "Config load failed" in capsys.readouterr().err
