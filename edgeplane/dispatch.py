"""Routes decoded requests to the engine that owns them.

Handlers hold no state. Settings work (git and file I/O) is pushed onto the
blocking executor; systemd and pipeline calls are awaited inline. The
recording manager offloads its own database access.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import Executor
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping

from pydantic import ValidationError

from edgeplane import messages as m
from edgeplane.config import ConfigPersistenceError, render_primary_settings
from edgeplane.errors import EdgeplaneError
from edgeplane.pipelines import PipelineNode, PipelineOrchestrator
from edgeplane.recording_store import VideoRecording
from edgeplane.recordings import RecordingManager
from edgeplane.settings_vcs import GitCommit, SettingsApp, SettingsChange, SettingsFile, SettingsRepository
from edgeplane.systemd_units import SystemdUnit, UnitControlAdapter, UnitJob

log = logging.getLogger("dispatch")


def _recording(recording: VideoRecording) -> m.VideoRecordingModel:
    return m.VideoRecordingModel.model_validate(recording.to_dict())


def _file(settings_file: SettingsFile) -> m.SettingsFileModel:
    return m.SettingsFileModel(
        app=settings_file.app,
        file_name=settings_file.file_name,
        file_format=settings_file.file_format,
        content=settings_file.content,
    )


def _history(commits: Iterable[GitCommit]) -> list[m.GitCommitModel]:
    return [m.GitCommitModel.model_validate(commit.to_dict()) for commit in commits]


def _unit(unit: SystemdUnit) -> m.SystemdUnitModel:
    return m.SystemdUnitModel.model_validate(unit.to_dict())


def _node(node: PipelineNode) -> m.PipelineNodeModel:
    return m.PipelineNodeModel(name=node.name, description=node.description, upstream=node.upstream)


class Dispatcher:
    def __init__(
        self,
        settings: SettingsRepository,
        orchestrator: PipelineOrchestrator,
        recordings: RecordingManager,
        units: UnitControlAdapter,
        *,
        executor: Executor | None = None,
    ) -> None:
        self.settings = settings
        self.orchestrator = orchestrator
        self.recordings = recordings
        self.units = units
        self._executor = executor

    async def _blocking(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    async def handle(self, request: m.Request) -> m.Reply:
        handler = _HANDLERS[type(request)]
        reply = await handler(self, request)
        log.debug("%s handled", request.subject_pattern)
        return reply

    async def dispatch(
        self, subject_pattern: str, payload: bytes | str | Mapping[str, Any] | None
    ) -> m.Reply | m.ErrorReply:
        try:
            request = m.decode(subject_pattern, payload)
            return await self.handle(request)
        except EdgeplaneError as exc:
            log.warning("%s failed: %s %s", subject_pattern, exc.kind, exc.detail)
            return m.ErrorReply(
                subject_pattern=subject_pattern, kind=exc.kind, detail=exc.detail or str(exc)
            )

    # ------------------------------------------------------------------
    # recordings
    # ------------------------------------------------------------------

    async def _recording_load(self, request: m.CameraRecordingLoadRequest) -> m.Reply:
        current, recordings = await self.recordings.load()
        return m.CameraRecordingLoadReply(
            current=_recording(current) if current is not None else None,
            recordings=[_recording(recording) for recording in recordings],
        )

    async def _recording_start(self, request: m.CameraRecordingStartRequest) -> m.Reply:
        recording = await self.recordings.start(request.gcode_file_name)
        return m.CameraRecordingStartReply(recording=_recording(recording))

    async def _recording_stop(self, request: m.CameraRecordingStopRequest) -> m.Reply:
        recording = await self.recordings.stop()
        return m.CameraRecordingStopReply(
            recording=_recording(recording) if recording is not None else None
        )

    async def _recording_sync(self, request: m.CameraRecordingSyncRequest) -> m.Reply:
        recording, parts = await self.recordings.scan_parts(request.recording_id)
        if request.cloud_sync_done:
            recording = await self.recordings.mark_synced(recording.id)
        return m.CameraRecordingSyncReply(
            recording=_recording(recording),
            parts=[m.VideoRecordingPartModel.model_validate(part.to_dict()) for part in parts],
        )

    async def _pipelines_start(self, request: m.PipelinesStartRequest) -> m.Reply:
        video_stream = await self._blocking(self._load_video_stream)
        nodes = await self.orchestrator.start_all(video_stream.model_dump(mode="json"))
        return m.PipelinesStartReply(pipelines=[_node(node) for node in nodes])

    # ------------------------------------------------------------------
    # settings
    # ------------------------------------------------------------------

    def _load_all_settings(self) -> m.SettingsFileLoadReply:
        files = self.settings.load_all()
        head = self.settings.head_commit()
        return m.SettingsFileLoadReply(
            files=[_file(settings_file) for settings_file in files],
            git_head_commit=head.id,
            git_history=_history(self.settings.repo_history()),
        )

    async def _settings_load(self, request: m.SettingsFileLoadRequest) -> m.Reply:
        return await self._blocking(self._load_all_settings)

    def _apply_settings(self, request: m.SettingsFileApplyRequest) -> SettingsChange:
        if request.git_head_commit:
            head = self.settings.head_commit().id
            if head != request.git_head_commit:
                log.warning(
                    "Applying %s on top of %s; caller last saw %s",
                    request.file.app.value,
                    head[:10],
                    request.git_head_commit[:10],
                )
        return self.settings.apply(request.file.app, request.file.content, request.git_commit_msg)

    async def _settings_apply(self, request: m.SettingsFileApplyRequest) -> m.Reply:
        change: SettingsChange = await self._blocking(self._apply_settings, request)
        return m.SettingsFileApplyReply(
            file=_file(change.file),
            git_head_commit=change.git_head_commit,
            git_history=_history(change.git_history),
        )

    async def _settings_revert(self, request: m.SettingsFileRevertRequest) -> m.Reply:
        change: SettingsChange = await self._blocking(
            self.settings.revert, request.app, request.git_commit
        )
        return m.SettingsFileRevertReply(
            app=request.app,
            files=[_file(change.file)],
            git_head_commit=change.git_head_commit,
            git_history=_history(change.git_history),
        )

    def _load_video_stream(self) -> m.VideoStreamSettings:
        video_stream = self.settings.load_video_stream()
        try:
            return m.VideoStreamSettings.model_validate(video_stream)
        except ValidationError as exc:
            raise ConfigPersistenceError(f"Saved video_stream settings are invalid: {exc}") from exc

    async def _camera_settings_load(self, request: m.CameraSettingsFileLoadRequest) -> m.Reply:
        video_stream = await self._blocking(self._load_video_stream)
        return m.CameraSettingsFileLoadReply.model_validate(video_stream.model_dump())

    def _apply_camera_settings(self, values: dict[str, Any]) -> m.VideoStreamSettings:
        current = self.settings.load(SettingsApp.PRIMARY).content
        content = render_primary_settings("video_stream", values, current)
        stamp = datetime.now(timezone.utc).isoformat()
        self.settings.apply(
            SettingsApp.PRIMARY, content, f"Updated video_stream settings @ {stamp}"
        )
        return self._load_video_stream()

    async def _camera_settings_apply(self, request: m.CameraSettingsFileApplyRequest) -> m.Reply:
        values = request.model_dump(mode="json")
        video_stream = await self._blocking(self._apply_camera_settings, values)
        return m.CameraSettingsFileApplyReply.model_validate(video_stream.model_dump())

    # ------------------------------------------------------------------
    # systemd
    # ------------------------------------------------------------------

    async def _disable_units(self, request: m.SystemdManagerDisableUnitsRequest) -> m.Reply:
        changes = await self.units.disable(request.files)
        return m.SystemdManagerDisableUnitsReply(
            changes=[m.SystemdUnitChangeModel.model_validate(change.to_dict()) for change in changes]
        )

    async def _enable_units(self, request: m.SystemdManagerEnableUnitsRequest) -> m.Reply:
        changes = await self.units.enable(request.files)
        return m.SystemdManagerEnableUnitsReply(
            changes=[m.SystemdUnitChangeModel.model_validate(change.to_dict()) for change in changes]
        )

    async def _get_unit(self, request: m.SystemdManagerGetUnitRequest) -> m.Reply:
        unit = await self.units.get_unit(request.unit_name)
        return m.SystemdManagerGetUnitReply(unit=_unit(unit))

    async def _get_unit_file_state(
        self, request: m.SystemdManagerGetUnitFileStateRequest
    ) -> m.Reply:
        state = await self.units.get_unit_file_state(request.unit_name)
        return m.SystemdManagerGetUnitFileStateReply(unit_file_state=state)

    async def _restart_unit(self, request: m.SystemdManagerRestartUnitRequest) -> m.Reply:
        job: UnitJob = await self.units.restart(request.unit_name)
        return m.SystemdManagerRestartUnitReply(job=job.job, unit=_unit(job.unit))

    async def _start_unit(self, request: m.SystemdManagerStartUnitRequest) -> m.Reply:
        job: UnitJob = await self.units.start(request.unit_name)
        return m.SystemdManagerStartUnitReply(job=job.job, unit=_unit(job.unit))

    async def _stop_unit(self, request: m.SystemdManagerStopUnitRequest) -> m.Reply:
        job: UnitJob = await self.units.stop(request.unit_name)
        return m.SystemdManagerStopUnitReply(job=job.job, unit=_unit(job.unit))


_HANDLERS: dict[type[m.Request], Callable[[Dispatcher, Any], Awaitable[m.Reply]]] = {
    m.CameraRecordingLoadRequest: Dispatcher._recording_load,
    m.CameraRecordingStartRequest: Dispatcher._recording_start,
    m.CameraRecordingStopRequest: Dispatcher._recording_stop,
    m.CameraRecordingSyncRequest: Dispatcher._recording_sync,
    m.PipelinesStartRequest: Dispatcher._pipelines_start,
    m.SettingsFileLoadRequest: Dispatcher._settings_load,
    m.SettingsFileApplyRequest: Dispatcher._settings_apply,
    m.SettingsFileRevertRequest: Dispatcher._settings_revert,
    m.CameraSettingsFileLoadRequest: Dispatcher._camera_settings_load,
    m.CameraSettingsFileApplyRequest: Dispatcher._camera_settings_apply,
    m.SystemdManagerDisableUnitsRequest: Dispatcher._disable_units,
    m.SystemdManagerEnableUnitsRequest: Dispatcher._enable_units,
    m.SystemdManagerGetUnitRequest: Dispatcher._get_unit,
    m.SystemdManagerGetUnitFileStateRequest: Dispatcher._get_unit_file_state,
    m.SystemdManagerRestartUnitRequest: Dispatcher._restart_unit,
    m.SystemdManagerStartUnitRequest: Dispatcher._start_unit,
    m.SystemdManagerStopUnitRequest: Dispatcher._stop_unit,
}
