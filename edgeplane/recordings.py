"""Single-active-recording lifecycle.

States: Idle -> Recording -> Captured -> (Synced). At most one row has
``capture_done=False``; ``start`` refuses to open a second one.

Database access is blocking and goes through the executor handed to the
manager. Pipeline and unit calls are awaited on the event loop.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import re
import uuid
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from edgeplane.config import get_cfg
from edgeplane.errors import (
    EdgeplaneError,
    NoCurrentRecording,
    RecordingAlreadyActive,
    RecordingNotFound,
    RecordingStateError,
    UnitControlError,
)
from edgeplane.pipelines import PipelineOrchestrator, recording_node_name
from edgeplane.recording_store import RecordingStore, VideoRecording, VideoRecordingPart, utcnow
from edgeplane.systemd_units import UnitControlAdapter

log = logging.getLogger("recordings")

PART_FILE_RE = re.compile(r"^part-(?P<index>\d+)\.mp4$")


def sync_unit_name(template: str, recording_id: str) -> str:
    return f"{template}@{recording_id}.service"


class RecordingManager:
    def __init__(
        self,
        store: RecordingStore,
        orchestrator: PipelineOrchestrator,
        units: UnitControlAdapter,
        *,
        recordings_dir: Path | str,
        sync_template: str,
        video_stream_settings: Callable[[], Mapping[str, Any]] | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.units = units
        self.recordings_dir = Path(recordings_dir)
        self.sync_template = sync_template
        self._video_stream = video_stream_settings or (lambda: get_cfg().get("video_stream", {}))
        self._executor = executor

    async def _blocking(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    def _recording_settings(self) -> Mapping[str, Any]:
        return self._video_stream().get("recording", {}) or {}

    async def start(self, gcode_file_name: str | None = None) -> VideoRecording:
        current = await self._blocking(self.store.get_current)
        if current is not None:
            raise RecordingAlreadyActive(f"Recording {current.id} is still capturing")

        settings = await self._blocking(self._recording_settings)
        recording_id = str(uuid.uuid4())
        directory = self.recordings_dir / recording_id
        await self._blocking(directory.mkdir, parents=True, exist_ok=True)

        await self.orchestrator.start_recording(
            recording_id, directory, int(settings.get("part_duration_sec", 60))
        )
        # Timestamped once the recording branch is playing.
        row = VideoRecording(
            id=recording_id,
            capture_done=False,
            cloud_sync_done=False,
            dir=str(directory),
            recording_start=utcnow(),
            gcode_file_name=gcode_file_name,
        )
        recording = await self._blocking(self.store.insert, row)
        log.info("Started recording %s in %s", recording.id, recording.dir)
        return recording

    async def _start_sync_unit(self, recording_id: str) -> None:
        try:
            settings = await self._blocking(self._recording_settings)
        except EdgeplaneError as exc:
            log.error("Unable to read recording settings; skipping cloud sync: %s", exc)
            return
        if not settings.get("cloud_sync"):
            return
        unit = sync_unit_name(self.sync_template, recording_id)
        log.info("Attempting to start %s", unit)
        try:
            await self.units.start(unit, mode="fail")
        except UnitControlError as exc:
            log.error("Failed to start %s: %s", unit, exc)

    async def stop(self) -> Optional[VideoRecording]:
        current = await self._blocking(self.store.get_current)
        if current is None:
            log.info("Stop requested with no recording in progress")
            return None

        try:
            await self.orchestrator.stop_node(recording_node_name(current.id))
            await self._start_sync_unit(current.id)
        finally:
            recording = await self._blocking(
                self.store.update, current.id, capture_done=True, recording_end=utcnow()
            )
        await self._blocking(self._index_parts, recording)
        log.info("Stopped recording %s", recording.id)
        return recording

    async def load(self) -> tuple[Optional[VideoRecording], list[VideoRecording]]:
        current = await self._blocking(self.store.get_current)
        recordings = await self._blocking(self.store.get_all)
        return current, recordings

    async def get(self, recording_id: str) -> VideoRecording:
        recording = await self._blocking(self.store.get_by_id, recording_id)
        if recording is None:
            raise RecordingNotFound(f"No recording with id={recording_id}")
        return recording

    def _index_parts(self, recording: VideoRecording) -> list[VideoRecordingPart]:
        directory = Path(recording.dir)
        entries = []
        if directory.is_dir():
            for path in sorted(directory.iterdir()):
                match = PART_FILE_RE.match(path.name)
                if not match or not path.is_file():
                    continue
                entries.append(
                    {
                        "id": str(uuid.uuid4()),
                        "part": int(match["index"]),
                        "size": path.stat().st_size,
                        "file_name": str(path),
                    }
                )
        return self.store.upsert_parts(recording.id, entries)

    async def scan_parts(
        self, recording_id: str | None = None
    ) -> tuple[VideoRecording, list[VideoRecordingPart]]:
        if recording_id is None:
            recording = await self._blocking(self.store.get_current)
            if recording is None:
                raise NoCurrentRecording("No recording in progress")
        else:
            recording = await self.get(recording_id)
        parts = await self._blocking(self._index_parts, recording)
        return recording, parts

    async def mark_synced(self, recording_id: str) -> VideoRecording:
        recording = await self.get(recording_id)
        if not recording.capture_done:
            raise RecordingStateError(f"Recording {recording_id} is still capturing")
        updated = await self._blocking(self.store.update, recording_id, cloud_sync_done=True)
        log.info("Recording %s synced", recording_id)
        return updated
