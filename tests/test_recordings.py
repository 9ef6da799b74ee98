from __future__ import annotations

from pathlib import Path

import pytest

from edgeplane.config import ConfigPersistenceError
from edgeplane.errors import (
    BusTransportError,
    NoCurrentRecording,
    PipelineFatal,
    RecordingAlreadyActive,
    RecordingNotFound,
    RecordingStateError,
)
from edgeplane.pipelines import PipelineNode, recording_node_name
from edgeplane.recording_store import RecordingStore
from edgeplane.recordings import RecordingManager, sync_unit_name


class FakeOrchestrator:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.started: list[tuple[str, Path, int]] = []
        self.stopped: list[str] = []

    async def start_recording(self, recording_id, directory, part_duration_sec) -> PipelineNode:
        if self.fail:
            raise PipelineFatal("gstd unavailable", node=recording_node_name(recording_id))
        self.started.append((recording_id, Path(directory), part_duration_sec))
        return PipelineNode(recording_node_name(recording_id), "fake", "h264")

    async def stop_node(self, name: str) -> None:
        self.stopped.append(name)


class FakeUnits:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.started: list[tuple[str, str]] = []

    async def start(self, name: str, mode: str = "replace"):
        self.started.append((name, mode))
        if self.fail:
            raise BusTransportError(f"{name} not loaded")
        return None


@pytest.fixture
def store(tmp_path: Path) -> RecordingStore:
    store = RecordingStore(tmp_path / "db" / "edgeplane.sqlite")
    store.create_tables()
    yield store
    store.dispose()


def _manager(store, tmp_path: Path, orchestrator=None, units=None, cloud_sync=True) -> RecordingManager:
    settings = {"recording": {"cloud_sync": cloud_sync, "part_duration_sec": 30}}
    return RecordingManager(
        store,
        orchestrator or FakeOrchestrator(),
        units or FakeUnits(),
        recordings_dir=tmp_path / "video",
        sync_template="edgeplane-recording-sync",
        video_stream_settings=lambda: settings,
    )


def test_sync_unit_name() -> None:
    assert sync_unit_name("edgeplane-recording-sync", "abc") == "edgeplane-recording-sync@abc.service"


@pytest.mark.asyncio
async def test_start_creates_current_recording(store, tmp_path) -> None:
    orchestrator = FakeOrchestrator()
    manager = _manager(store, tmp_path, orchestrator=orchestrator)

    recording = await manager.start("benchy.gcode")

    assert recording.capture_done is False
    assert recording.cloud_sync_done is False
    assert recording.gcode_file_name == "benchy.gcode"
    assert recording.recording_start is not None
    assert Path(recording.dir) == tmp_path / "video" / recording.id
    assert Path(recording.dir).is_dir()
    assert orchestrator.started == [(recording.id, Path(recording.dir), 30)]

    current, recordings = await manager.load()
    assert current is not None and current.id == recording.id
    assert [r.id for r in recordings] == [recording.id]


@pytest.mark.asyncio
async def test_second_start_is_rejected(store, tmp_path) -> None:
    orchestrator = FakeOrchestrator()
    manager = _manager(store, tmp_path, orchestrator=orchestrator)
    await manager.start()

    with pytest.raises(RecordingAlreadyActive):
        await manager.start()

    assert len([r for r in store.get_all() if not r.capture_done]) == 1
    assert len(orchestrator.started) == 1


@pytest.mark.asyncio
async def test_failed_pipeline_leaves_no_row(store, tmp_path) -> None:
    manager = _manager(store, tmp_path, orchestrator=FakeOrchestrator(fail=True))

    with pytest.raises(PipelineFatal):
        await manager.start()

    assert store.get_all() == []


@pytest.mark.asyncio
async def test_stop_when_idle_returns_none(store, tmp_path) -> None:
    orchestrator = FakeOrchestrator()
    units = FakeUnits()
    manager = _manager(store, tmp_path, orchestrator=orchestrator, units=units)

    assert await manager.stop() is None
    assert orchestrator.stopped == []
    assert units.started == []


@pytest.mark.asyncio
async def test_stop_finalizes_recording(store, tmp_path) -> None:
    orchestrator = FakeOrchestrator()
    units = FakeUnits()
    manager = _manager(store, tmp_path, orchestrator=orchestrator, units=units)
    recording = await manager.start()
    directory = Path(recording.dir)
    (directory / "part-00000.mp4").write_bytes(b"\x00" * 10)
    (directory / "part-00001.mp4").write_bytes(b"\x00" * 4)
    (directory / "notes.txt").write_text("ignored")

    stopped = await manager.stop()

    assert stopped.id == recording.id
    assert stopped.capture_done is True
    assert stopped.recording_end is not None
    assert orchestrator.stopped == [recording_node_name(recording.id)]
    assert units.started == [(f"edgeplane-recording-sync@{recording.id}.service", "fail")]
    assert store.get_current() is None

    stored = store.get_by_id(recording.id)
    assert [(part.part, part.size) for part in stored.parts] == [(0, 10), (1, 4)]


@pytest.mark.asyncio
async def test_stop_without_cloud_sync_skips_unit(store, tmp_path) -> None:
    units = FakeUnits()
    manager = _manager(store, tmp_path, units=units, cloud_sync=False)
    await manager.start()

    stopped = await manager.stop()

    assert stopped.capture_done is True
    assert units.started == []


@pytest.mark.asyncio
async def test_stop_survives_sync_unit_failure(store, tmp_path) -> None:
    units = FakeUnits(fail=True)
    manager = _manager(store, tmp_path, units=units)
    await manager.start()

    stopped = await manager.stop()

    assert stopped.capture_done is True
    assert len(units.started) == 1


@pytest.mark.asyncio
async def test_stop_finalizes_when_settings_are_unreadable(store, tmp_path) -> None:
    state = {"broken": False}

    def video_stream():
        if state["broken"]:
            raise ConfigPersistenceError("Unable to parse primary settings")
        return {"recording": {"cloud_sync": True}}

    units = FakeUnits()
    manager = RecordingManager(
        store,
        FakeOrchestrator(),
        units,
        recordings_dir=tmp_path / "video",
        sync_template="edgeplane-recording-sync",
        video_stream_settings=video_stream,
    )
    recording = await manager.start()
    state["broken"] = True

    stopped = await manager.stop()

    assert stopped.id == recording.id
    assert stopped.capture_done is True
    assert units.started == []
    assert store.get_current() is None

    state["broken"] = False
    again = await manager.start()
    assert again.id != recording.id


class FailingStopOrchestrator(FakeOrchestrator):
    async def stop_node(self, name: str) -> None:
        raise PipelineFatal("gstd unavailable", node=name)


@pytest.mark.asyncio
async def test_stop_finalizes_when_eos_fails(store, tmp_path) -> None:
    units = FakeUnits()
    manager = _manager(store, tmp_path, orchestrator=FailingStopOrchestrator(), units=units)
    recording = await manager.start()

    with pytest.raises(PipelineFatal):
        await manager.stop()

    assert store.get_by_id(recording.id).capture_done is True
    assert store.get_current() is None
    assert units.started == []


@pytest.mark.asyncio
async def test_scan_parts_and_mark_synced(store, tmp_path) -> None:
    manager = _manager(store, tmp_path)

    with pytest.raises(NoCurrentRecording):
        await manager.scan_parts()

    recording = await manager.start()
    part = Path(recording.dir) / "part-00000.mp4"
    part.write_bytes(b"\x00" * 3)

    scanned, parts = await manager.scan_parts()
    assert scanned.id == recording.id
    assert [(p.part, p.size) for p in parts] == [(0, 3)]

    with pytest.raises(RecordingStateError):
        await manager.mark_synced(recording.id)

    part.write_bytes(b"\x00" * 8)
    await manager.stop()

    _, parts = await manager.scan_parts(recording.id)
    assert [(p.part, p.size) for p in parts] == [(0, 8)]
    assert parts[0].file_name == str(part)

    synced = await manager.mark_synced(recording.id)
    assert synced.cloud_sync_done is True


@pytest.mark.asyncio
async def test_unknown_recording(store, tmp_path) -> None:
    manager = _manager(store, tmp_path)
    with pytest.raises(RecordingNotFound):
        await manager.get("missing")
    with pytest.raises(RecordingNotFound):
        store.update("missing", capture_done=True)


def test_store_rejects_unknown_fields(store) -> None:
    with pytest.raises(ValueError):
        store.update("anything", dir="/elsewhere")
