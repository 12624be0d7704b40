import pytest

from stagehand_automation.executors import LocalExecutor
from stagehand_automation.operations import package as pkg
from stagehand_automation.operations.package import PackageManager
from stagehand_automation.types import HostConfig


class FakePackageManager(PackageManager):
    name = "fake"

    def __init__(self, installed: set[str]):
        self._installed = installed
        self.installed_calls: list[list[str]] = []
        self.removed_calls: list[list[str]] = []
        self.refreshed = 0

    def refresh(self, executor) -> None:  # type: ignore[override]
        self.refreshed += 1

    def install(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.installed_calls.append(packages)
        self._installed.update(packages)

    def remove(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.removed_calls.append(packages)
        for pkg_name in packages:
            self._installed.discard(pkg_name)

    def is_installed(self, executor, package: str) -> bool:  # type: ignore[override]
        return package in self._installed


@pytest.fixture
def fake_manager(monkeypatch):
    installed = {"cups"}
    manager = FakePackageManager(installed)

    def create(cls, preferred, executor):
        return manager

    monkeypatch.setattr(pkg.PackageManagerFactory, "create", classmethod(create))
    return manager


def build_executor() -> LocalExecutor:
    host = HostConfig(name="local")
    return LocalExecutor(host, dry_run=False)


def test_package_present_installs_missing(fake_manager):
    op = pkg.PackageOperation({"name": ["cups", "fail2ban"], "state": "present"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert fake_manager.installed_calls == [["fail2ban"]]


def test_package_present_is_idempotent(fake_manager):
    op = pkg.AptOperation({"name": "fail2ban", "state": "present"})

    first = op.apply(HostConfig("local"), build_executor())
    second = op.apply(HostConfig("local"), build_executor())

    assert first.changed is True
    assert second.changed is False
    assert "already-installed" in second.details


def test_package_absent_removes_installed(fake_manager):
    op = pkg.PackageOperation({"name": "cups", "state": "absent"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert fake_manager.removed_calls == [["cups"]]


def test_update_cache_alone_reports_unchanged(fake_manager):
    op = pkg.AptOperation({"update_cache": "yes"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is False
    assert fake_manager.refreshed == 1
    assert "cache-updated" in result.details


def test_package_requires_names():
    with pytest.raises(ValueError):
        pkg.PackageOperation({})


def test_package_rejects_unknown_state():
    with pytest.raises(ValueError):
        pkg.PackageOperation({"name": "nginx", "state": "purged"})


def test_apt_manager_queries_dpkg(make_sim, make_executor):
    sim = make_sim("ubu1", packages={"nginx"})
    executor = make_executor(HostConfig("ubu1"), sim=sim)

    op = pkg.AptOperation({"name": ["nginx", "php-fpm"], "state": "present", "update_cache": True})
    result = op.apply(HostConfig("ubu1"), executor)

    assert result.changed is True
    assert "installed=php-fpm" in result.details
    assert ["apt-get", "update", "-q"] in sim.commands
    assert ["apt-get", "install", "-y", "-q", "php-fpm"] in sim.commands
    assert sim.packages == {"nginx", "php-fpm"}


def test_factory_prefers_declared_manager(make_executor):
    executor = make_executor(HostConfig("local"))
    assert pkg.PackageManagerFactory.create("dnf", executor).name == "dnf"
    assert pkg.PackageManagerFactory.create(None, executor).name == "apt"
    with pytest.raises(ValueError):
        pkg.PackageManagerFactory.create("brew", executor)
