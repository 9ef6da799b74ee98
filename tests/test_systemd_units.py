from __future__ import annotations

from typing import Sequence

import pytest

from edgeplane.errors import BusTransportError, UnknownChangeKind, UnknownUnitState
from edgeplane.systemd_units import (
    UnitChangeKind,
    UnitControlAdapter,
    UnitFileState,
    parse_change_report,
    to_change_kind,
    to_unit_file_state,
)

SHOW_OCTOPRINT = """Id=octoprint.service
Description=OctoPrint
LoadState=loaded
ActiveState=active
SubState=running
UnitFileState=enabled
FragmentPath=/lib/systemd/system/octoprint.service
"""


class FakeSystemctl:
    def __init__(self, responses: dict[str, tuple[int, str, str]] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[list[str]] = []

    async def __call__(self, args: Sequence[str]) -> tuple[int, str, str]:
        self.calls.append(list(args))
        return self.responses.get(args[0], (0, "", ""))


def test_change_kind_translation() -> None:
    assert to_change_kind("symlink") is UnitChangeKind.SYMLINK
    assert to_change_kind("unlink") is UnitChangeKind.UNLINK
    with pytest.raises(UnknownChangeKind):
        to_change_kind("copy")


def test_unit_file_state_translation() -> None:
    assert to_unit_file_state("enabled-runtime") is UnitFileState.ENABLED_RUNTIME
    assert to_unit_file_state("masked\n") is UnitFileState.MASKED
    with pytest.raises(UnknownUnitState):
        to_unit_file_state("sideways")


def test_parse_change_report_formats() -> None:
    output = "\n".join(
        [
            "Created symlink /etc/systemd/system/multi-user.target.wants/a.service → /lib/systemd/system/a.service.",
            "Created symlink '/etc/systemd/system/b.service' → '/usr/lib/systemd/system/b.service'.",
            'Removed "/etc/systemd/system/multi-user.target.wants/c.service".',
            "ln -s '/lib/systemd/system/d.service' '/etc/systemd/system/multi-user.target.wants/d.service'",
            "rm '/etc/systemd/system/multi-user.target.wants/e.service'",
            "Synchronizing state of a.service with SysV service script",
        ]
    )

    assert parse_change_report(output) == [
        ("symlink", "/etc/systemd/system/multi-user.target.wants/a.service", "/lib/systemd/system/a.service"),
        ("symlink", "/etc/systemd/system/b.service", "/usr/lib/systemd/system/b.service"),
        ("unlink", "/etc/systemd/system/multi-user.target.wants/c.service", ""),
        ("symlink", "/etc/systemd/system/multi-user.target.wants/d.service", "/lib/systemd/system/d.service"),
        ("unlink", "/etc/systemd/system/multi-user.target.wants/e.service", ""),
    ]


def test_parse_change_report_keeps_non_link_outcomes() -> None:
    output = "\n".join(
        [
            "Unit foo.service is masked, ignoring.",
            "Unit bar.service is added as a dependency to a non-existent unit missing.target.",
            "Failed to enable auxiliary unit baz.socket, ignoring.",
            "Executing: /lib/systemd/systemd-sysv-install enable foo",
        ]
    )

    assert parse_change_report(output) == [
        ("is-masked", "foo.service", ""),
        ("destination-not-present", "bar.service", "missing.target"),
        ("auxiliary-failed", "baz.socket", ""),
    ]


@pytest.mark.asyncio
async def test_enable_masked_unit_is_unknown_change() -> None:
    runner = FakeSystemctl({"enable": (0, "", "Unit foo.service is masked, ignoring.\n")})

    with pytest.raises(UnknownChangeKind):
        await UnitControlAdapter(runner).enable(["foo.service"])


@pytest.mark.asyncio
async def test_enable_reports_symlink_and_reloads() -> None:
    runner = FakeSystemctl(
        {
            "enable": (
                0,
                "",
                "Created symlink /etc/systemd/system/multi-user.target.wants/octoprint.service "
                "→ /lib/systemd/system/octoprint.service.\n",
            )
        }
    )
    adapter = UnitControlAdapter(runner)

    changes = await adapter.enable(["octoprint.service"])

    assert [change.to_dict() for change in changes] == [
        {
            "change": "Symlink",
            "file": "/etc/systemd/system/multi-user.target.wants/octoprint.service",
            "destination": "/lib/systemd/system/octoprint.service",
        }
    ]
    assert runner.calls == [["enable", "octoprint.service"], ["daemon-reload"]]


@pytest.mark.asyncio
async def test_enable_already_enabled_is_empty() -> None:
    runner = FakeSystemctl()
    changes = await UnitControlAdapter(runner).enable(["octoprint.service"])
    assert changes == []


@pytest.mark.asyncio
async def test_disable_reports_unlink() -> None:
    runner = FakeSystemctl(
        {"disable": (0, "", "Removed /etc/systemd/system/multi-user.target.wants/octoprint.service.\n")}
    )

    changes = await UnitControlAdapter(runner).disable(["octoprint.service"])

    assert len(changes) == 1
    assert changes[0].change is UnitChangeKind.UNLINK
    assert changes[0].file == "/etc/systemd/system/multi-user.target.wants/octoprint.service"


@pytest.mark.asyncio
async def test_enable_failure_is_transport_error() -> None:
    runner = FakeSystemctl({"enable": (1, "", "Failed to enable unit: Unit file nope.service does not exist.")})
    with pytest.raises(BusTransportError):
        await UnitControlAdapter(runner).enable(["nope.service"])
    assert ["daemon-reload"] not in runner.calls


@pytest.mark.asyncio
async def test_get_unit_file_state() -> None:
    adapter = UnitControlAdapter(FakeSystemctl({"is-enabled": (1, "disabled\n", "")}))
    assert await adapter.get_unit_file_state("moonraker.service") is UnitFileState.DISABLED

    adapter = UnitControlAdapter(FakeSystemctl({"is-enabled": (0, "wobbly\n", "")}))
    with pytest.raises(UnknownUnitState):
        await adapter.get_unit_file_state("moonraker.service")

    adapter = UnitControlAdapter(
        FakeSystemctl({"is-enabled": (1, "", "Failed to get unit file state for nope.service")})
    )
    with pytest.raises(BusTransportError):
        await adapter.get_unit_file_state("nope.service")


@pytest.mark.asyncio
async def test_get_unit() -> None:
    unit = await UnitControlAdapter(FakeSystemctl({"show": (0, SHOW_OCTOPRINT, "")})).get_unit(
        "octoprint.service"
    )
    assert unit.to_dict() == {
        "id": "octoprint.service",
        "description": "OctoPrint",
        "load_state": "loaded",
        "active_state": "active",
        "sub_state": "running",
        "unit_file_state": "enabled",
        "fragment_path": "/lib/systemd/system/octoprint.service",
    }


@pytest.mark.asyncio
async def test_get_unit_not_found() -> None:
    show = "Id=nope.service\nLoadState=not-found\nActiveState=inactive\n"
    with pytest.raises(BusTransportError):
        await UnitControlAdapter(FakeSystemctl({"show": (0, show, "")})).get_unit("nope.service")


@pytest.mark.asyncio
async def test_start_returns_job_and_unit() -> None:
    runner = FakeSystemctl(
        {
            "list-jobs": (0, "4242 octoprint.service start waiting\n", ""),
            "show": (0, SHOW_OCTOPRINT, ""),
        }
    )

    job = await UnitControlAdapter(runner).start("octoprint.service", mode="fail")

    assert job.job == "4242"
    assert job.unit.id == "octoprint.service"
    assert runner.calls[0] == ["start", "--no-block", "--job-mode=fail", "octoprint.service"]


@pytest.mark.asyncio
async def test_restart_without_pending_job() -> None:
    runner = FakeSystemctl({"show": (0, SHOW_OCTOPRINT, "")})

    job = await UnitControlAdapter(runner).restart("octoprint.service")

    assert job.job is None
    assert runner.calls[0] == ["restart", "--no-block", "--job-mode=replace", "octoprint.service"]


@pytest.mark.asyncio
async def test_stop_failure_is_transport_error() -> None:
    runner = FakeSystemctl({"stop": (5, "", "Failed to stop nope.service: Unit nope.service not loaded.")})
    with pytest.raises(BusTransportError):
        await UnitControlAdapter(runner).stop("nope.service")
