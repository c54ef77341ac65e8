"""Tests for snapshot models and clamping."""

import pytest
from conftest import make_entry, raw_system

from taskwarden.models import (
    CpuInfo,
    KillOutcome,
    KillStatus,
    MemoryInfo,
    ProcessEntry,
    ProcessSnapshot,
    SystemSnapshot,
    clamp_percent,
)


class TestClamping:
    @pytest.mark.parametrize(
        "value,expected",
        [(-5, 0.0), (150, 100.0), (42.7, 42.7), ("12.5", 12.5), (None, 0.0), (float("nan"), 0.0)],
    )
    def test_clamp_percent(self, value, expected) -> None:
        assert clamp_percent(value) == expected

    def test_memory_used_plus_free_never_exceeds_total(self) -> None:
        mem = MemoryInfo.build(total=1000, used=800, free=700)
        assert mem.used == 800
        assert mem.free == 200
        assert mem.used + mem.free <= mem.total

    def test_memory_used_capped_at_total(self) -> None:
        mem = MemoryInfo.build(total=1000, used=5000, free=10)
        assert mem.used == 1000
        assert mem.free == 0
        assert mem.used_percent == 100.0

    def test_memory_zero_total(self) -> None:
        mem = MemoryInfo.build(total=0, used=0, free=0)
        assert mem.used_percent == 0.0


class TestSystemSnapshot:
    def test_normalizes_raw_sample(self) -> None:
        """cpu 42.7, cores [10, 95], mem 1000/600/400 keeps values and formats percent."""
        snapshot = SystemSnapshot.from_raw(raw_system())
        data = snapshot.to_dict()

        assert data["cpu"]["load"] == 42.7
        assert data["cpu"]["cores"] == [{"load": 10.0}, {"load": 95.0}]
        assert data["memory"]["used_percent"] == "60.0"
        assert data["memory"]["used"] + data["memory"]["free"] <= data["memory"]["total"]

    def test_accepts_bare_core_numbers(self) -> None:
        raw = raw_system()
        raw["cores"] = [5, 15]
        snapshot = SystemSnapshot.from_raw(raw)
        assert snapshot.cores == (5.0, 15.0)

    def test_clamps_out_of_range_loads(self) -> None:
        snapshot = SystemSnapshot.from_raw(raw_system(cpu=180.0, cores=(-3, 250)))
        assert snapshot.cpu_load == 100.0
        assert snapshot.cores == (0.0, 100.0)

    def test_missing_fields_become_zero(self) -> None:
        snapshot = SystemSnapshot.from_raw({})
        assert snapshot.cpu_load == 0.0
        assert snapshot.cores == ()
        assert snapshot.memory.total == 0
        assert snapshot.captured_at > 0

    def test_source_is_recorded(self) -> None:
        snapshot = SystemSnapshot.from_raw(raw_system(), source="ps")
        assert snapshot.to_dict()["source"] == "ps"

    def test_cpu_info_in_wire_form(self) -> None:
        raw = raw_system()
        raw["cpu_info"] = {
            "manufacturer": "AMD",
            "brand": "AMD Ryzen 7 5800X",
            "speed": 3.8,
            "temperature": 61.46,
        }
        cpu = SystemSnapshot.from_raw(raw).to_dict()["cpu"]

        assert cpu["manufacturer"] == "AMD"
        assert cpu["brand"] == "AMD Ryzen 7 5800X"
        assert cpu["speed"] == 3.8
        assert cpu["temperature"] == 61.5

    def test_cpu_info_defaults_when_missing(self) -> None:
        cpu = SystemSnapshot.from_raw(raw_system()).to_dict()["cpu"]
        assert cpu["manufacturer"] == "unknown"
        assert cpu["speed"] == 0.0
        assert cpu["temperature"] is None

    def test_negative_speed_is_clamped(self) -> None:
        assert CpuInfo.from_raw({"speed": -1}).speed == 0.0


class TestProcessEntry:
    def test_from_raw(self) -> None:
        entry = ProcessEntry.from_raw(
            {"pid": 42, "name": "nginx", "cpu": 3.5, "mem": 1.2, "user": "www"}
        )
        assert entry == ProcessEntry(42, "nginx", 3.5, 1.2, "www", True)

    @pytest.mark.parametrize("raw", [{"pid": 0, "name": "x"}, {"pid": 5, "name": ""}, {}])
    def test_unusable_records_are_dropped(self, raw) -> None:
        assert ProcessEntry.from_raw(raw) is None

    def test_protected_names_match_case_insensitively(self) -> None:
        entry = ProcessEntry.from_raw({"pid": 1, "name": "Systemd"}, protected=["systemd"])
        assert entry is not None
        assert entry.killable is False

    def test_collector_can_mark_unkillable(self) -> None:
        entry = ProcessEntry.from_raw({"pid": 7, "name": "self", "killable": False})
        assert entry is not None
        assert entry.killable is False

    def test_negative_cpu_clamped(self) -> None:
        entry = ProcessEntry.from_raw({"pid": 7, "name": "x", "cpu": -4, "mem": 300})
        assert entry is not None
        assert entry.cpu_percent == 0.0
        assert entry.memory_percent == 100.0

    def test_multicore_cpu_not_capped_at_100(self) -> None:
        entry = ProcessEntry.from_raw({"pid": 7, "name": "x", "cpu": 350.0})
        assert entry is not None
        assert entry.cpu_percent == 350.0


class TestProcessSnapshot:
    def test_sorted_by_cpu_descending_and_truncated(self) -> None:
        entries = [make_entry(pid=i, cpu=float(i % 7)) for i in range(1, 30)]
        snapshot = ProcessSnapshot.from_entries(entries, top_n=10)

        cpus = [e.cpu_percent for e in snapshot.entries]
        assert cpus == sorted(cpus, reverse=True)
        assert len(snapshot) == 10
        assert snapshot.total_count == 29

    def test_duplicate_pids_keep_first(self) -> None:
        snapshot = ProcessSnapshot.from_entries(
            [make_entry(pid=5, name="first"), make_entry(pid=5, name="second")], top_n=10
        )
        assert len(snapshot) == 1
        assert snapshot.entries[0].name == "first"

    def test_find_and_pids(self) -> None:
        snapshot = ProcessSnapshot.from_entries(
            [make_entry(pid=5), make_entry(pid=6)], top_n=10
        )
        assert snapshot.pids() == {5, 6}
        assert snapshot.find(6) is not None
        assert snapshot.find(7) is None

    def test_wire_form(self) -> None:
        snapshot = ProcessSnapshot.from_entries(
            [make_entry(pid=5, name="vim", cpu=1.26)], top_n=10, source="ps", captured_at=10.0
        )
        assert snapshot.to_dict() == {
            "processes": [
                {
                    "pid": 5,
                    "name": "vim",
                    "cpu": 1.3,
                    "memory": 0.5,
                    "user": "alice",
                    "killable": True,
                }
            ],
            "total_count": 1,
            "captured_at": 10.0,
            "source": "ps",
        }


class TestKillOutcome:
    def test_failed_helper(self) -> None:
        outcome = KillOutcome.failed(9, "permission denied", "abc")
        assert outcome.status is KillStatus.FAILED
        assert not outcome.succeeded
        assert outcome.to_dict() == {
            "pid": 9,
            "request_id": "abc",
            "status": "failed",
            "reason": "permission denied",
        }

    def test_from_dict_unknown_status_is_failure(self) -> None:
        outcome = KillOutcome.from_dict({"pid": 3, "status": "exploded"})
        assert outcome.status is KillStatus.FAILED

    def test_from_dict_reads_wire_form(self) -> None:
        outcome = KillOutcome.from_dict(
            {"pid": 3, "status": "succeeded", "reason": "process 3 terminated", "request_id": "r"}
        )
        assert outcome.succeeded
        assert outcome.request_id == "r"
