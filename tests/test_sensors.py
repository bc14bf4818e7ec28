"""Tests for the psutil-backed sensor adapter."""
from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest

from hostwatch.config import SamplingConfig
from hostwatch.errors import SensorError, SensorPartialFailure, SensorTimeout
from hostwatch.models import MetricKind, SampleTimestamp
from hostwatch.system.sensors import SensorAdapter

STAMP = SampleTimestamp(wall=1_700_000_000.0, monotonic=12.0)


@pytest.fixture()
def release():
    event = threading.Event()
    yield event
    event.set()


def _config(*kinds: MetricKind, timeout: float = 1.0) -> SamplingConfig:
    return SamplingConfig(
        interval_seconds=5.0, collect_timeout_seconds=timeout, enabled_kinds=list(kinds)
    )


def test_collect_reads_the_real_host() -> None:
    adapter = SensorAdapter(SamplingConfig(collect_timeout_seconds=10.0))
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    values = {sample.kind: sample.value for sample in batch}
    assert set(values) | set(batch.failures) == set(MetricKind)
    assert all(sample.timestamp == STAMP for sample in batch)
    if MetricKind.CPU_LOAD in values:
        assert 0.0 <= values[MetricKind.CPU_LOAD] <= 100.0
        assert isinstance(values[MetricKind.CPU_LOAD], float)
    if MetricKind.MEM_USED in values and MetricKind.MEM_TOTAL in values:
        assert 0 <= values[MetricKind.MEM_USED] <= values[MetricKind.MEM_TOTAL]
    if MetricKind.PROCESS_COUNT in values:
        assert values[MetricKind.PROCESS_COUNT] >= 1
    for kind, value in values.items():
        if kind.is_integer:
            assert isinstance(value, int) and value >= 0


def test_collect_stamps_batch_when_no_timestamp_given(fake_clock) -> None:
    adapter = SensorAdapter(
        _config(MetricKind.PROCESS_COUNT),
        readers={MetricKind.PROCESS_COUNT: lambda: (42, None)},
        clock=fake_clock,
    )
    try:
        batch = adapter.collect()
    finally:
        adapter.close()

    assert batch.samples[0].timestamp == fake_clock.now()
    assert batch.samples[0].value == 42


def test_failing_reader_yields_partial_batch() -> None:
    def broken():
        raise SensorError("interface eth9 vanished")

    adapter = SensorAdapter(
        _config(MetricKind.MEM_USED, MetricKind.NET_RX_BYTES),
        readers={MetricKind.MEM_USED: lambda: (2048.9, None), MetricKind.NET_RX_BYTES: broken},
    )
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    assert batch.is_partial
    assert batch.kinds == [MetricKind.MEM_USED]
    assert batch.samples[0].value == 2048
    assert "eth9" in batch.failures[MetricKind.NET_RX_BYTES]


def test_every_reader_failing_raises_partial_failure() -> None:
    def broken():
        raise OSError("permission denied")

    adapter = SensorAdapter(
        _config(MetricKind.MEM_USED, MetricKind.MEM_TOTAL),
        readers={MetricKind.MEM_USED: broken, MetricKind.MEM_TOTAL: broken},
    )
    try:
        with pytest.raises(SensorPartialFailure) as excinfo:
            adapter.collect(STAMP)
    finally:
        adapter.close()

    assert set(excinfo.value.failures) == {MetricKind.MEM_USED, MetricKind.MEM_TOTAL}


def test_hanging_reader_is_left_out_after_timeout(release) -> None:
    def hanging():
        release.wait(5.0)
        return 1, None

    adapter = SensorAdapter(
        _config(MetricKind.CPU_LOAD, MetricKind.DISK_READ_BYTES, timeout=0.1),
        readers={MetricKind.CPU_LOAD: lambda: (150.0, None), MetricKind.DISK_READ_BYTES: hanging},
    )
    try:
        batch = adapter.collect(STAMP)
        again = adapter.collect(STAMP)
    finally:
        release.set()
        adapter.close()

    assert batch.kinds == [MetricKind.CPU_LOAD]
    assert batch.samples[0].value == 100.0
    assert "timed out" in batch.failures[MetricKind.DISK_READ_BYTES]
    assert again.failures[MetricKind.DISK_READ_BYTES] == "previous read still pending"


def test_stalled_host_raises_sensor_timeout(release) -> None:
    def hanging():
        release.wait(5.0)
        return 1, None

    adapter = SensorAdapter(
        _config(MetricKind.MEM_USED, timeout=0.05), readers={MetricKind.MEM_USED: hanging}
    )
    try:
        with pytest.raises(SensorTimeout):
            adapter.collect(STAMP)
    finally:
        release.set()
        adapter.close()


def test_adapter_exposes_kinds_and_timeout() -> None:
    config = _config(MetricKind.CPU_LOAD)
    adapter = SensorAdapter(config, readers={MetricKind.CPU_LOAD: lambda: (1.0, None)})
    adapter.close()

    assert adapter.kinds == [MetricKind.CPU_LOAD]
    assert adapter.timeout == 1.0


def test_missing_network_interface_is_reported() -> None:
    config = SamplingConfig(
        collect_timeout_seconds=5.0,
        enabled_kinds=[MetricKind.NET_RX_BYTES],
        network_interface="no-such-nic0",
    )
    adapter = SensorAdapter(config)
    try:
        with pytest.raises(SensorPartialFailure) as excinfo:
            adapter.collect(STAMP)
    finally:
        adapter.close()

    assert "no-such-nic0" in excinfo.value.failures[MetricKind.NET_RX_BYTES]


def test_disk_usage_names_its_mount_point(tmp_path) -> None:
    config = SamplingConfig(
        collect_timeout_seconds=5.0,
        enabled_kinds=[MetricKind.DISK_USED, MetricKind.DISK_TOTAL],
        disk_usage_path=str(tmp_path),
    )
    adapter = SensorAdapter(config)
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    values = {sample.kind: sample for sample in batch}
    assert values[MetricKind.DISK_USED].source == str(tmp_path)
    assert values[MetricKind.DISK_USED].value <= values[MetricKind.DISK_TOTAL].value


def test_describe_host() -> None:
    adapter = SensorAdapter(_config(MetricKind.CPU_LOAD), readers={MetricKind.CPU_LOAD: lambda: (0.0, None)})
    try:
        info = adapter.describe_host()
    finally:
        adapter.close()

    assert {"hostname", "os", "cpu_model", "physical_cores", "logical_cores", "boot_time"} <= set(info)
    assert info["logical_cores"] >= 1


def test_injected_cpu_reading_is_clamped() -> None:
    adapter = SensorAdapter(
        _config(MetricKind.CPU_LOAD), readers={MetricKind.CPU_LOAD: lambda: (-3.0, None)}
    )
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    assert batch.samples[0].value == 0.0
    assert MetricKind.CPU_LOAD.coerce(250) == 100.0
    assert MetricKind.PROCESS_CPU.coerce(250) == 250.0


def test_reader_may_report_several_samples_of_one_kind() -> None:
    top = [(88.5, "postgres[412]"), (12.0, "sshd[77]")]
    adapter = SensorAdapter(
        _config(MetricKind.PROCESS_CPU, MetricKind.PROCESS_COUNT),
        readers={MetricKind.PROCESS_CPU: lambda: list(top), MetricKind.PROCESS_COUNT: lambda: (2, None)},
    )
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    assert batch.kinds == [MetricKind.PROCESS_CPU, MetricKind.PROCESS_CPU, MetricKind.PROCESS_COUNT]
    assert [(sample.value, sample.source) for sample in batch.samples[:2]] == top


def _fake_process(pid, name, cpu=None, rss=None):
    memory = SimpleNamespace(rss=rss) if rss is not None else None
    return SimpleNamespace(info={"pid": pid, "name": name, "cpu_percent": cpu, "memory_info": memory})


def test_top_processes_are_ranked_and_limited(monkeypatch) -> None:
    table = [
        _fake_process(1, "init", cpu=0.1, rss=4_096),
        _fake_process(812, "java", cpu=140.0, rss=900_000_000),
        _fake_process(77, "sshd", cpu=None, rss=None),
        _fake_process(413, "postgres", cpu=35.5, rss=250_000_000),
        _fake_process(9, None, cpu=2.0, rss=1_024),
    ]
    monkeypatch.setattr("psutil.process_iter", lambda attrs=None: iter(table))
    config = SamplingConfig(
        collect_timeout_seconds=5.0,
        enabled_kinds=[MetricKind.PROCESS_CPU, MetricKind.PROCESS_RSS],
        top_process_count=2,
    )
    adapter = SensorAdapter(config)
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    cpu = [(s.source, s.value) for s in batch if s.kind is MetricKind.PROCESS_CPU]
    rss = [(s.source, s.value) for s in batch if s.kind is MetricKind.PROCESS_RSS]
    assert cpu == [("java[812]", 140.0), ("postgres[413]", 35.5)]
    assert rss == [("java[812]", 900_000_000), ("postgres[413]", 250_000_000)]
    assert not batch.is_partial


def test_unnamed_process_gets_placeholder_source(monkeypatch) -> None:
    monkeypatch.setattr("psutil.process_iter", lambda attrs=None: iter([_fake_process(9, None, rss=1_024)]))
    config = SamplingConfig(collect_timeout_seconds=5.0, enabled_kinds=[MetricKind.PROCESS_RSS])
    adapter = SensorAdapter(config)
    try:
        batch = adapter.collect(STAMP)
    finally:
        adapter.close()

    assert [(s.source, s.value) for s in batch] == [("?[9]", 1_024)]
