import threading
from datetime import datetime, timedelta, timezone

import pytest

from nodekeeper_agent.agent import Agent, PassResult
from nodekeeper_agent.config import AgentConfig
from nodekeeper_agent.executor import ReconcileResult
from nodekeeper_agent.models import (
    ANNOTATION_LAST_UPGRADE,
    ANNOTATION_LOCKED_SINCE,
    ConfigSet,
    File,
    ManagedNode,
    UpgradeSpec,
)

UTC = timezone.utc


@pytest.fixture
def config(tmp_path) -> AgentConfig:
    return AgentConfig(
        root_path=tmp_path,
        namespace="default",
        store_path=tmp_path / "nodes.db",
        config_repo_path=tmp_path / "desired",
        backoff_min=timedelta(milliseconds=1),
        backoff_max=timedelta(milliseconds=2),
    )


@pytest.fixture
def agent(config, store, repo, system, clock) -> Agent:
    return Agent(config, store, repo, system, clock=clock, sleep=clock.sleep)


def test_first_pass_registers_node_and_applies_matching_configsets(agent, store, repo, tmp_path) -> None:
    target = tmp_path / "motd"
    repo.put_configset(ConfigSet(name="all-arch", labels={"os": "arch"}, files=[File(path=str(target), content="hi\n")]))
    repo.put_configset(ConfigSet(name="alpine-only", labels={"os": "alpine"}))

    result = agent.run_once()

    assert result.error is None
    assert result.configsets["all-arch"].result == ReconcileResult.APPLIED
    assert result.configsets["all-arch"].changed_files == [str(target)]
    assert result.configsets["alpine-only"].result == ReconcileResult.SKIPPED
    assert store.get("default", "node-a").labels["hostname"] == "node-a"


def test_deferred_upgrade_sets_next_check(agent, store) -> None:
    store.create(ManagedNode(
        name="node-a",
        labels={"upgrade-group": "web"},
        upgrade=UpgradeSpec(group="web", schedule="0 3 * * *", delay="24h"),
    ))
    store.create(ManagedNode(
        name="node-b",
        labels={"upgrade-group": "web"},
        annotations={ANNOTATION_LOCKED_SINCE: "2024-05-01T02:00:00Z"},
    ))
    agent.locker.lock_timeout = timedelta(0)

    result = agent.run_once()

    assert result.next_check == datetime(2024, 5, 2, 3, 0, tzinfo=UTC)
    assert "upgrade lock" in result.error


def test_scheduler_error_does_not_block_configsets(agent, store, repo, tmp_path) -> None:
    store.create(ManagedNode(name="node-a", upgrade=UpgradeSpec(schedule="bogus", delay="1h")))
    target = tmp_path / "x"
    repo.put_configset(ConfigSet(name="cs", files=[File(path=str(target), content="x")]))

    result = agent.run_once()

    assert "invalid upgrade schedule" in result.error
    assert result.configsets["cs"].result == ReconcileResult.APPLIED
    assert target.exists()


def test_wait_seconds_prefers_earlier_next_check(agent, clock) -> None:
    result = agent.run_once()
    assert agent.wait_seconds(result) == 300

    result.next_check = clock() + timedelta(seconds=42)
    assert agent.wait_seconds(result) == 42

    result.next_check = clock() - timedelta(seconds=5)
    assert agent.wait_seconds(result) == 1


def test_run_forever_stops_on_event(agent) -> None:
    stop = threading.Event()
    passes = []
    original = agent.run_once

    def run_once():
        passes.append(1)
        stop.set()
        return original()

    agent.run_once = run_once
    agent.run_forever(stop)

    assert passes == [1]
    assert agent.stop_event is stop


def test_pass_result_to_dict(agent, repo, tmp_path) -> None:
    repo.put_configset(ConfigSet(name="cs", files=[File(path=str(tmp_path / "y"), ensure="fifo")]))

    data = agent.run_once().to_dict()

    assert data["configsets"]["cs"]["result"] == "failed"
    assert data["configsets"]["cs"]["error"]["resource"] == "cs/files"
    assert data["next_check"] is None


def test_broken_configset_is_failed_and_others_still_apply(agent, repo, tmp_path) -> None:
    target = tmp_path / "motd"
    repo.put_configset(ConfigSet(name="good", files=[File(path=str(target), content="hi\n")]))
    directory = repo.path / "default" / "configsets"
    (directory / "bad-json.json").write_text("{not json")
    (directory / "bad-shape.json").write_text('{"labels": "os=arch"}')

    result = agent.run_once()

    assert result.error is None
    assert result.configsets["good"].result == ReconcileResult.APPLIED
    assert target.read_text() == "hi\n"
    for name in ("bad-json", "bad-shape"):
        assert result.configsets[name].result == ReconcileResult.FAILED
        assert result.configsets[name].error.resource == f"{name}/load"


def test_run_forever_survives_a_crashed_pass(agent) -> None:
    stop = threading.Event()
    passes = []

    def run_once():
        passes.append(1)
        if len(passes) == 1:
            raise RuntimeError("boom")
        stop.set()
        return PassResult()

    agent.run_once = run_once
    agent.config.reconcile_interval = timedelta(0)
    agent.run_forever(stop)

    assert passes == [1, 1]


def test_configured_upgrade_spec_is_written_to_the_record(config, store, repo, system, clock) -> None:
    config.upgrade = UpgradeSpec(group="web", schedule="0 4 * * *", delay="24h")
    agent = Agent(config, store, repo, system, clock=clock, sleep=clock.sleep)

    agent.run_once()
    node = store.get("default", "node-a")
    assert node.upgrade == UpgradeSpec(group="web", schedule="0 4 * * *", delay="24h")
    assert node.labels["upgrade-group"] == "web"

    version = node.version
    agent.run_once()
    assert store.get("default", "node-a").version == version


def test_unconfigured_upgrade_spec_keeps_the_record(agent, store) -> None:
    store.create(ManagedNode(name="node-a", upgrade=UpgradeSpec(group="db", schedule="0 5 * * *", delay="1h")))

    agent.run_once()

    assert store.get("default", "node-a").upgrade.group == "db"


def test_upgrade_cycle_from_environment(tmp_path, store, repo, system, clock) -> None:
    config = AgentConfig.from_env({
        "NODEKEEPER_ROOT_PATH": str(tmp_path),
        "NODEKEEPER_UPGRADE_GROUP": "web",
        "NODEKEEPER_UPGRADE_SCHEDULE": "0 3 * * *",
        "NODEKEEPER_UPGRADE_DELAY": "24h",
        "NODEKEEPER_BACKOFF_MIN": "1ms",
        "NODEKEEPER_BACKOFF_MAX": "2ms",
    })
    agent = Agent(config, store, repo, system, clock=clock, sleep=clock.sleep)

    # 03:00:30, inside the forgiveness window of the 03:00 match
    agent.run_once()
    assert system.node.upgrades == 1
    assert system.node.reboots == 1
    node = store.get("default", "node-a")
    assert ANNOTATION_LOCKED_SINCE in node.annotations
    assert ANNOTATION_LAST_UPGRADE not in node.annotations

    # Back from the reboot
    clock.advance(300)
    result = agent.run_once()
    node = store.get("default", "node-a")
    assert ANNOTATION_LOCKED_SINCE not in node.annotations
    assert ANNOTATION_LAST_UPGRADE in node.annotations
    assert result.error is None

    # Within the delay nothing more happens
    clock.advance(3600)
    result = agent.run_once()
    assert system.node.reboots == 1
    assert result.next_check > clock()
