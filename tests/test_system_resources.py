from types import SimpleNamespace

import pytest

from worker_sizing.core import system_resources as sr
from worker_sizing.core.system_resources import (
    CGROUP_V1_UNLIMITED,
    MB,
    ResourceSnapshot,
    detect_container_limit,
    detect_resources,
    read_cgroup_v1_limit,
    read_cgroup_v2_limit,
)


@pytest.fixture
def fake_psutil(monkeypatch):
    vm = SimpleNamespace(total=16000 * MB, available=4000 * MB)
    monkeypatch.setattr(sr.psutil, "virtual_memory", lambda: vm)
    monkeypatch.setattr(sr.psutil, "cpu_count", lambda logical=True: 4)
    return vm


@pytest.fixture
def cgroup(tmp_path):
    def write(name, content):
        path = tmp_path / name
        path.write_text(content)
        return str(path)

    return write


def test_v2_limit_parsed(cgroup):
    assert read_cgroup_v2_limit(cgroup("memory.max", f"{1024 * MB}\n")) == 1024 * MB


@pytest.mark.parametrize("content", ["max\n", "", "lots", "-5", "0"])
def test_v2_limit_rejects_unlimited_and_garbage(cgroup, content):
    assert read_cgroup_v2_limit(cgroup("memory.max", content)) is None


def test_v2_missing_file(tmp_path):
    assert read_cgroup_v2_limit(str(tmp_path / "nope")) is None


def test_v1_limit_parsed(cgroup):
    assert read_cgroup_v1_limit(cgroup("limit", str(512 * MB))) == 512 * MB


@pytest.mark.parametrize("content", [str(CGROUP_V1_UNLIMITED), "9223372036854771712", "9223372036854710272", str(2**63 - 1), "abc", "0"])
def test_v1_limit_rejects_unlimited_and_garbage(cgroup, content):
    assert read_cgroup_v1_limit(cgroup("limit", content)) is None


def test_directory_instead_of_file_is_a_miss(tmp_path):
    assert read_cgroup_v1_limit(str(tmp_path)) is None


def test_v2_takes_precedence_over_v1(cgroup):
    v2 = cgroup("memory.max", str(1024 * MB))
    v1 = cgroup("limit", str(256 * MB))
    assert detect_container_limit(v2, v1) == 1024 * MB


def test_v2_unlimited_falls_through_to_v1(cgroup):
    v2 = cgroup("memory.max", "max")
    v1 = cgroup("limit", str(256 * MB))
    assert detect_container_limit(v2, v1) == 256 * MB


def test_no_limit_anywhere(cgroup, tmp_path):
    v1 = cgroup("limit", str(CGROUP_V1_UNLIMITED))
    assert detect_container_limit(str(tmp_path / "missing"), v1) is None


def test_detect_resources_in_container(fake_psutil, cgroup, tmp_path):
    snapshot = detect_resources(cgroup("memory.max", str(1024 * MB)), str(tmp_path / "missing"))

    assert snapshot == ResourceSnapshot(
        host_memory_bytes=16000 * MB,
        free_memory_bytes=4000 * MB,
        cpu_count=4,
        container_memory_limit_bytes=1024 * MB,
    )
    assert snapshot.is_container_constrained
    assert snapshot.memory_source == "container"


def test_detect_resources_on_host(fake_psutil, tmp_path):
    snapshot = detect_resources(str(tmp_path / "a"), str(tmp_path / "b"))

    assert snapshot.container_memory_limit_bytes is None
    assert not snapshot.is_container_constrained
    assert snapshot.memory_source == "host"
    assert snapshot.free_memory_bytes == 4000 * MB


def test_unknown_cpu_count_defaults_to_one(fake_psutil, monkeypatch, tmp_path):
    monkeypatch.setattr(sr.psutil, "cpu_count", lambda logical=True: None)
    assert detect_resources(str(tmp_path / "a"), str(tmp_path / "b")).cpu_count == 1


def test_snapshot_is_immutable():
    snapshot = ResourceSnapshot(host_memory_bytes=1, free_memory_bytes=1, cpu_count=1)
    with pytest.raises(AttributeError):
        snapshot.cpu_count = 2
