import logging

import pytest

from stagehand_automation import task_executor as task_module
from stagehand_automation.context import HostContext
from stagehand_automation.operations.base import Operation
from stagehand_automation.task_executor import TaskExecutor
from stagehand_automation.types import ActionResult, HostConfig, TaskSpec

UNWANTED = ["cups", "avahi-daemon", "xinetd"]


def build(make_sim, make_executor, name="ubu1", **sim_kwargs):
    host = HostConfig(name=name)
    sim = make_sim(name, **sim_kwargs)
    executor = make_executor(host, sim=sim)
    context = HostContext(host, {}, {"inventory_hostname": name, "group_names": []})
    return TaskExecutor(context, executor, become=True), context, sim


def test_stop_only_services_that_exist(make_sim, make_executor):
    runner, context, sim = build(
        make_sim,
        make_executor,
        services={
            "cups": {"active": True, "enabled": True},
            "avahi-daemon": {"active": False, "enabled": False},
        },
    )
    check = TaskSpec(
        name="Check if service exists",
        action="shell",
        args={"_raw_params": "systemctl status {{ item }}"},
        loop=list(UNWANTED),
        register="service_check",
        failed_when=[False],
        changed_when=[False],
    )
    stop = TaskSpec(
        name="Stop unwanted services if they exist",
        action="service",
        args={"name": "{{ item }}", "state": "stopped", "enabled": False},
        loop=list(UNWANTED),
        when=[
            "service_check.results is defined and service_check.results[loop.index0] is defined "
            "and service_check.results[loop.index0].rc == 0"
        ],
    )

    check_outcome = runner.run(check)
    outcome = runner.run(stop)

    assert check_outcome.failed is False
    assert check_outcome.changed is False
    assert [r["rc"] for r in context.registered["service_check"]["results"]] == [0, 3, 4]
    assert [r.skipped for r in outcome.results] == [False, True, True]
    assert outcome.results[0].changed is True
    # present but already stopped: status rc=3, so the stop is skipped
    assert outcome.results[1].changed is False
    assert sim.services["avahi-daemon"] == {"active": False, "enabled": False}
    assert ["systemctl", "status", "avahi-daemon"] in sim.commands
    assert ["systemctl", "stop", "cups"] in sim.commands
    assert not any(cmd[:2] == ["systemctl", "stop"] and cmd[2] != "cups" for cmd in sim.commands)
    assert sim.services["cups"] == {"active": False, "enabled": False}


def test_when_targets_single_host(make_sim, make_executor):
    task = TaskSpec(
        name="Allow HTTP",
        action="ufw",
        args={"rule": "allow", "port": "{{ item }}"},
        loop=[80, 443],
        when=["inventory_hostname == 'ubu1'"],
    )
    runner1, _, sim1 = build(make_sim, make_executor, name="ubu1")
    runner2, _, sim2 = build(make_sim, make_executor, name="ubu2")

    assert runner1.run(task).changed is True
    outcome2 = runner2.run(task)

    assert sim1.ufw_rules == ["ufw allow 80", "ufw allow 443"]
    assert outcome2.skipped is True
    assert outcome2.results[0].details == "skipped (conditional result was false)"
    assert sim2.ufw_rules == []


def test_registered_result_feeds_later_conditions(make_sim, make_executor):
    runner, context, _ = build(make_sim, make_executor, files={"/etc/filebeat/filebeat.yml": "output.logstash:\n"})
    runner.run(
        TaskSpec(
            name="probe",
            action="shell",
            args={"_raw_params": "grep -q '^output.logstash:' /etc/filebeat/filebeat.yml"},
            register="probe",
            failed_when=[False],
        )
    )
    outcome = runner.run(
        TaskSpec(
            name="write",
            action="copy",
            args={"dest": "/etc/filebeat/filebeat.yml", "content": "output.elasticsearch:\n"},
            when=["probe.rc != 0"],
        )
    )

    assert context.registered["probe"]["rc"] == 0
    assert outcome.skipped is True


def test_changed_when_and_failed_when_override_result(fake_executor):
    context = HostContext(fake_executor.host, {}, {"inventory_hostname": "local"})
    runner = TaskExecutor(context, fake_executor)

    changed = runner.run(
        TaskSpec(name="reload", action="command", args={"_raw_params": "ufw reload"}, changed_when=["true"])
    )
    failing = runner.run(
        TaskSpec(
            name="key",
            action="command",
            args={"_raw_params": "apt-key adv --recv-keys D27D666CD88E42B4"},
            register="add_gpg_key",
            failed_when=["add_gpg_key.rc == 0"],
        )
    )

    assert changed.changed is True
    assert failing.failed is True
    assert failing.results[0].details.endswith("(failed_when matched)")
    assert context.registered["add_gpg_key"]["failed"] is True


def test_ignore_errors_marks_outcome_ignored(fake_executor):
    context = HostContext(fake_executor.host, {}, {})
    runner = TaskExecutor(context, fake_executor)

    outcome = runner.run(
        TaskSpec(name="grep", action="command", args={"_raw_params": "grep x /missing"}, ignore_errors=True)
    )

    assert outcome.failed is True
    assert outcome.ignored is True


def test_undefined_variable_fails_task(fake_executor):
    context = HostContext(fake_executor.host, {}, {})
    runner = TaskExecutor(context, fake_executor)

    outcome = runner.run(TaskSpec(name="debug", action="debug", args={"msg": "{{ missing_var }}"}))

    assert outcome.failed is True
    assert "missing_var" in outcome.results[0].details


def test_invalid_arguments_fail_task(fake_executor):
    runner = TaskExecutor(HostContext(fake_executor.host, {}, {}), fake_executor)

    outcome = runner.run(TaskSpec(name="svc", action="service", args={"name": "nginx", "state": "bouncing"}))

    assert outcome.failed is True
    assert "service state" in outcome.results[0].details


def test_loop_over_mapping_and_non_list(fake_executor):
    context = HostContext(fake_executor.host, {}, {})
    context.begin_play({"ports": {"ssh": 22}})
    runner = TaskExecutor(context, fake_executor)

    outcome = runner.run(
        TaskSpec(name="show", action="debug", args={"msg": "{{ item.key }}={{ item.value }}"}, loop="{{ ports }}")
    )
    broken = runner.run(TaskSpec(name="show", action="debug", args={"msg": "x"}, loop="{{ 5 }}"))

    assert outcome.results[0].details == "ssh=22"
    assert broken.failed is True


def test_setup_facts_become_variables(fake_executor):
    context = HostContext(fake_executor.host, {}, {})
    runner = TaskExecutor(context, fake_executor)

    runner.run(TaskSpec(name="Gathering Facts", action="setup"))
    outcome = runner.run(
        TaskSpec(name="only ubuntu", action="debug", args={"var": "ansible_distribution"},
                 when=['ansible_distribution == "Ubuntu"'])
    )

    assert context.facts["distribution"] == "Ubuntu"
    assert outcome.results[0].details == "ansible_distribution = 'Ubuntu'"


class FlakyOperation(Operation):
    calls = 0

    def apply(self, host, executor):
        FlakyOperation.calls += 1
        ready = FlakyOperation.calls >= 3
        return ActionResult(host=host.name, action="flaky", changed=False, details="ready" if ready else "waiting",
                            failed=not ready)


@pytest.fixture
def flaky(monkeypatch):
    FlakyOperation.calls = 0
    monkeypatch.setitem(task_module.OPERATION_REGISTRY, "flaky", FlakyOperation)
    return FlakyOperation


def test_retries_until_success(flaky, fake_executor):
    runner = TaskExecutor(HostContext(fake_executor.host, {}, {}), fake_executor)

    outcome = runner.run(TaskSpec(name="wait", action="flaky", retries=5, delay=0))

    assert flaky.calls == 3
    assert outcome.failed is False


def test_retries_exhausted_reports_failure(flaky, fake_executor):
    runner = TaskExecutor(HostContext(fake_executor.host, {}, {}), fake_executor)

    outcome = runner.run(
        TaskSpec(name="wait", action="flaky", retries=1, register="waited", until=["waited.msg == 'ready'"])
    )

    assert flaky.calls == 2
    assert outcome.failed is True


def test_successful_task_logs_no_errors(fake_executor, caplog):
    runner = TaskExecutor(HostContext(fake_executor.host, {}, {}), fake_executor)

    with caplog.at_level(logging.INFO):
        outcome = runner.run(TaskSpec(name="ok", action="debug", args={"msg": "hi"}))

    assert outcome.failed is False
    assert [r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR] == []


def test_bad_regexp_fails_only_the_task(fake_executor):
    runner = TaskExecutor(HostContext(fake_executor.host, {}, {}), fake_executor)

    outcome = runner.run(
        TaskSpec(name="edit", action="lineinfile", args={"path": "/etc/x", "regexp": "(", "line": "b"})
    )

    assert outcome.failed is True
    assert outcome.results[0].details.startswith("invalid arguments:")


def test_with_items_flattens_rendered_lists(fake_executor):
    context = HostContext(fake_executor.host, {}, {})
    context.begin_play({"package_groups": [["nginx", "ufw"], "fail2ban"]})
    runner = TaskExecutor(context, fake_executor)

    outcome = runner.run(
        TaskSpec(name="show", action="debug", args={"msg": "{{ item }}"}, loop="{{ package_groups }}",
                 flatten_loop=True)
    )

    assert outcome.loop_items == ["nginx", "ufw", "fail2ban"]
    assert [r.details for r in outcome.results] == ["nginx", "ufw", "fail2ban"]


def test_unexpanded_block_is_rejected(fake_executor):
    runner = TaskExecutor(HostContext(fake_executor.host, {}, {}), fake_executor)

    with pytest.raises(RuntimeError):
        runner.run(TaskSpec(name="block-1", block=[TaskSpec(name="x", action="debug")]))
