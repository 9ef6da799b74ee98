"""Async wrapper around ``systemctl`` for unit lifecycle management.

Raw values reported by systemd (change verbs, unit file states) are mapped
onto closed enums. Anything outside the known vocabulary raises instead of
being coerced.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from edgeplane.errors import BusTransportError, UnknownChangeKind, UnknownUnitState

log = logging.getLogger("systemd_units")

SystemctlRunner = Callable[[Sequence[str]], Awaitable[tuple[int, str, str]]]

UNIT_PROPERTIES = (
    "Id",
    "Description",
    "LoadState",
    "ActiveState",
    "SubState",
    "UnitFileState",
    "FragmentPath",
)


class UnitChangeKind(str, Enum):
    SYMLINK = "Symlink"
    UNLINK = "Unlink"


class UnitFileState(str, Enum):
    ENABLED = "enabled"
    ENABLED_RUNTIME = "enabled-runtime"
    LINKED = "linked"
    LINKED_RUNTIME = "linked-runtime"
    ALIAS = "alias"
    MASKED = "masked"
    MASKED_RUNTIME = "masked-runtime"
    STATIC = "static"
    INDIRECT = "indirect"
    DISABLED = "disabled"
    GENERATED = "generated"
    TRANSIENT = "transient"
    BAD = "bad"
    INVALID = "invalid"


_CHANGE_KINDS = {
    "symlink": UnitChangeKind.SYMLINK,
    "unlink": UnitChangeKind.UNLINK,
}


@dataclass(frozen=True)
class SystemdUnitChange:
    change: UnitChangeKind
    file: str
    destination: str

    def to_dict(self) -> dict[str, Any]:
        return {"change": self.change.value, "file": self.file, "destination": self.destination}


@dataclass(frozen=True)
class SystemdUnit:
    id: str
    description: str
    load_state: str
    active_state: str
    sub_state: str
    unit_file_state: str
    fragment_path: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UnitJob:
    job: str | None
    unit: SystemdUnit


def to_change_kind(raw: str) -> UnitChangeKind:
    try:
        return _CHANGE_KINDS[raw.strip().lower()]
    except KeyError:
        raise UnknownChangeKind(f"Unknown unit file change type {raw!r}") from None


def to_unit_file_state(raw: str) -> UnitFileState:
    try:
        return UnitFileState(raw.strip())
    except ValueError:
        raise UnknownUnitState(f"Unknown unit file state {raw!r}") from None


_CREATED_RE = re.compile(r"^Created symlink (?P<file>.+?) (?:→|->) (?P<dest>.+?)\.?$")
_REMOVED_RE = re.compile(r"^Removed (?P<file>.+?)\.?$")
_LEGACY_LN_RE = re.compile(r"^ln -s '(?P<dest>[^']+)' '(?P<file>[^']+)'$")
_LEGACY_RM_RE = re.compile(r"^rm '(?P<file>[^']+)'$")
# Non-link outcomes systemd reports per unit file; these carry no Symlink or
# Unlink meaning and must not be dropped silently.
_OTHER_CHANGE_RES = (
    ("is-masked", re.compile(r"^Unit (?P<file>\S+) is masked")),
    ("is-dangling", re.compile(r"^Unit (?P<file>\S+) is an alias to a unit that is not present")),
    (
        "destination-not-present",
        re.compile(r"^Unit (?P<file>\S+) is added as a dependency to a non-existent unit (?P<dest>\S+?)\.?$"),
    ),
    ("auxiliary-failed", re.compile(r"^Failed to enable auxiliary unit (?P<file>\S+?), ignoring\.?$")),
)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_change_report(output: str) -> list[tuple[str, str, str]]:
    """Extract ``(verb, file, destination)`` tuples from enable/disable output.

    Lines that describe no unit file change (SysV synchronisation notices,
    install hints, blank lines) are skipped.
    """
    changes: list[tuple[str, str, str]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        match = _CREATED_RE.match(line) or _LEGACY_LN_RE.match(line)
        if match:
            changes.append(("symlink", _unquote(match["file"]), _unquote(match["dest"])))
            continue
        match = _LEGACY_RM_RE.match(line) or _REMOVED_RE.match(line)
        if match:
            changes.append(("unlink", _unquote(match["file"]), ""))
            continue
        for verb, pattern in _OTHER_CHANGE_RES:
            match = pattern.match(line)
            if match:
                dest = match.groupdict().get("dest") or ""
                changes.append((verb, _unquote(match["file"]), _unquote(dest)))
                break
    return changes


def parse_show_output(payload: str, properties: Sequence[str]) -> dict[str, str]:
    result: dict[str, str] = {prop: "" for prop in properties}
    for line in payload.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key in result:
            result[key] = value.strip()
    return result


def _parse_job_id(payload: str, unit: str) -> str | None:
    for line in payload.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[1] == unit:
            return fields[0]
    return None


async def run_systemctl(args: Sequence[str]) -> tuple[int, str, str]:
    cmd = ["systemctl", "--no-ask-password", *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", "systemctl not found"

    stdout_raw, stderr_raw = await proc.communicate()
    stdout = stdout_raw.decode("utf-8", errors="replace")
    stderr = stderr_raw.decode("utf-8", errors="replace")
    return proc.returncode, stdout, stderr


class UnitControlAdapter:
    def __init__(self, runner: SystemctlRunner | None = None) -> None:
        self._run = runner or run_systemctl

    async def _checked(self, args: Sequence[str]) -> tuple[str, str]:
        code, stdout, stderr = await self._run(args)
        log.debug("systemctl %s -> %s %s %s", " ".join(args), code, stdout.strip(), stderr.strip())
        if code != 0:
            raise BusTransportError(
                f"systemctl {' '.join(args)} failed ({code}): {stderr.strip() or stdout.strip()}"
            )
        return stdout, stderr

    async def daemon_reload(self) -> None:
        await self._checked(["daemon-reload"])

    async def _change_unit_files(self, verb: str, files: Sequence[str]) -> list[SystemdUnitChange]:
        if not files:
            return []
        stdout, stderr = await self._checked([verb, *files])
        # systemctl reports link changes on stderr; older builds used stdout.
        raw = parse_change_report("\n".join((stdout, stderr)))
        changes = [
            SystemdUnitChange(change=to_change_kind(kind), file=file, destination=dest)
            for kind, file, dest in raw
        ]
        await self.daemon_reload()
        log.info("systemctl %s %s: %d change(s)", verb, " ".join(files), len(changes))
        return changes

    async def enable(self, files: Sequence[str]) -> list[SystemdUnitChange]:
        return await self._change_unit_files("enable", files)

    async def disable(self, files: Sequence[str]) -> list[SystemdUnitChange]:
        return await self._change_unit_files("disable", files)

    async def get_unit(self, name: str) -> SystemdUnit:
        stdout, _ = await self._checked(["show", name, f"--property={','.join(UNIT_PROPERTIES)}"])
        props = parse_show_output(stdout, UNIT_PROPERTIES)
        if props["LoadState"] in ("", "not-found"):
            raise BusTransportError(f"Unit {name} not loaded")
        return SystemdUnit(
            id=props["Id"] or name,
            description=props["Description"],
            load_state=props["LoadState"],
            active_state=props["ActiveState"],
            sub_state=props["SubState"],
            unit_file_state=props["UnitFileState"],
            fragment_path=props["FragmentPath"],
        )

    async def get_unit_file_state(self, name: str) -> UnitFileState:
        # is-enabled exits non-zero for disabled units; the exit code alone
        # does not signal a missing unit.
        code, stdout, stderr = await self._run(["is-enabled", name])
        answer = stdout.strip().splitlines()
        if not answer or answer[0].strip() == "not-found":
            raise BusTransportError(
                f"systemctl is-enabled {name} failed ({code}): {stderr.strip() or 'no output'}"
            )
        return to_unit_file_state(answer[0])

    async def _job(self, verb: str, name: str, mode: str) -> UnitJob:
        await self._checked([verb, "--no-block", f"--job-mode={mode}", name])
        code, jobs, _ = await self._run(["list-jobs", "--no-legend", "--plain"])
        job = _parse_job_id(jobs, name) if code == 0 else None
        log.info("Submitted %s job=%s for unit=%s", verb, job, name)
        return UnitJob(job=job, unit=await self.get_unit(name))

    async def start(self, name: str, mode: str = "replace") -> UnitJob:
        return await self._job("start", name, mode)

    async def stop(self, name: str, mode: str = "replace") -> UnitJob:
        return await self._job("stop", name, mode)

    async def restart(self, name: str, mode: str = "replace") -> UnitJob:
        return await self._job("restart", name, mode)
