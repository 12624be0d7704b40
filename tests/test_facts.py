import pytest

from stagehand_automation.facts import FactGatherer, distribution_facts, parse_os_release
from stagehand_automation.operations.facts import PackageFactsOperation, SetupOperation
from stagehand_automation.types import HostConfig


def test_parse_os_release_strips_quotes_and_comments():
    text = '# comment\nNAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\n\nPRETTY_NAME="Ubuntu 22.04.3 LTS"\n'

    values = parse_os_release(text)

    assert values["NAME"] == "Ubuntu"
    assert values["VERSION_ID"] == "22.04"
    assert values["PRETTY_NAME"] == "Ubuntu 22.04.3 LTS"


def test_distribution_family_falls_back_to_id_like():
    facts = distribution_facts({"ID": "linuxmint", "ID_LIKE": "ubuntu debian", "NAME": "Linux Mint"})

    assert facts["distribution"] == "Linux Mint"
    assert facts["os_family"] == "Debian"


def test_gather_reads_release_and_system_details(fake_executor):
    facts = FactGatherer(fake_executor).gather()

    assert facts["distribution"] == "Ubuntu"
    assert facts["distribution_version"] == "22.04"
    assert facts["distribution_major_version"] == "22"
    assert facts["distribution_release"] == "jammy"
    assert facts["os_family"] == "Debian"
    assert facts["architecture"] == "x86_64"
    assert facts["hostname"] == "local"


def test_setup_operation_publishes_facts(fake_executor):
    result = SetupOperation({}).apply(HostConfig("local"), fake_executor)

    assert result.changed is False
    assert result.details == "Ubuntu 22.04"
    assert result.facts["distribution"] == "Ubuntu"


def test_package_facts_lists_installed_packages(make_sim, make_executor):
    sim = make_sim("ubu1", packages={"cups", "nginx"})
    executor = make_executor(HostConfig("ubu1"), sim=sim)

    result = PackageFactsOperation({"manager": "auto"}).apply(HostConfig("ubu1"), executor)

    packages = result.facts["packages"]
    assert sorted(packages) == ["cups", "nginx"]
    assert packages["cups"] == [{"name": "cups", "version": "1.0", "source": "apt"}]
    assert result.details == "2 packages"


def test_package_facts_works_in_check_mode(make_sim, make_executor):
    sim = make_sim("ubu1", packages={"cups"})
    executor = make_executor(HostConfig("ubu1"), sim=sim, dry_run=True)

    result = PackageFactsOperation({}).apply(HostConfig("ubu1"), executor)

    assert "cups" in result.facts["packages"]


def test_package_facts_rejects_unknown_manager():
    with pytest.raises(ValueError):
        PackageFactsOperation({"manager": "pacman"})
