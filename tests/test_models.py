from datetime import datetime, timedelta, timezone

import pytest

from nodekeeper_agent.errors import UnrecognizedValueError
from nodekeeper_agent.models import (
    ConfigSet,
    FileEnsure,
    ManagedNode,
    PackageEnsure,
    ServiceStatus,
    UpgradeSpec,
    format_timestamp,
    label_match,
    parse_duration,
    parse_timestamp,
)


@pytest.mark.parametrize("text,expected", [
    ("24h", timedelta(hours=24)),
    ("1h30m", timedelta(hours=1, minutes=30)),
    ("90s", timedelta(seconds=90)),
    ("250ms", timedelta(milliseconds=250)),
    ("1.5h", timedelta(minutes=90)),
])
def test_parse_duration(text, expected) -> None:
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "10", "h", "1d", "5m garbage"])
def test_parse_duration_rejects(text) -> None:
    with pytest.raises(UnrecognizedValueError):
        parse_duration(text)


def test_label_match() -> None:
    labels = {"os": "arch", "role": "web"}
    assert label_match(labels, {})
    assert label_match(labels, {"os": "arch"})
    assert not label_match(labels, {"os": "alpine"})
    assert not label_match(labels, {"zone": "a"})


def test_timestamps_are_rfc3339_utc() -> None:
    moment = datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)
    assert format_timestamp(moment) == "2024-05-01T03:00:00Z"
    assert parse_timestamp("2024-05-01T03:00:00Z") == moment
    assert parse_timestamp("2024-05-01T05:00:00+02:00") == moment
    with pytest.raises(UnrecognizedValueError):
        parse_timestamp("yesterday")


def test_ensure_strings() -> None:
    assert FileEnsure.from_string("") == FileEnsure.FILE
    assert FileEnsure.from_string("fifo") == FileEnsure.UNHANDLED
    assert PackageEnsure.from_string("latest") == PackageEnsure.UNHANDLED
    assert ServiceStatus.from_string("paused") == ServiceStatus.UNKNOWN


def test_configset_reads_wire_keys() -> None:
    cs = ConfigSet.from_dict({
        "name": "web",
        "labels": {"role": "web"},
        "spec": {
            "packages": [{"name": "nginx"}],
            "files": [{"path": "/etc/app.env", "template": "x", "secretRefs": ["db"], "configMapRefs": ["ports"]}],
            "services": [{"name": "nginx", "enable": True, "ensure": "running", "subscribe_files": ["/etc/app.env"]}],
            "executions": [{"command": "/usr/bin/true", "subscribe_files": ["/etc/app.env"]}],
        },
    })

    assert cs.packages[0].ensure == "installed"
    assert cs.files[0].secret_refs == ["db"]
    assert cs.files[0].config_map_refs == ["ports"]
    assert cs.services[0].subscribe_files == ["/etc/app.env"]
    assert ConfigSet.from_dict(cs.to_dict()) == cs


@pytest.mark.parametrize("document", [
    {"spec": {}},
    {"name": "web", "spec": {"files": [{"content": "no path"}]}},
    {"name": "web", "labels": "role=web"},
    {"name": "web", "spec": ["packages"]},
    {"name": "web", "spec": {"packages": "nginx"}},
])
def test_malformed_configset_is_unrecognized(document) -> None:
    with pytest.raises(UnrecognizedValueError):
        ConfigSet.from_dict(document)


def test_managed_node_document() -> None:
    node = ManagedNode(name="n", upgrade=UpgradeSpec(group="g", schedule="0 3 * * *", delay="24h"))
    again = ManagedNode.from_dict(node.to_dict(), version=4)
    assert again.upgrade == node.upgrade
    assert again.version == 4
