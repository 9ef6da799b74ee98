"""Request/reply schemas for every supported subject.

Each subject pattern maps to exactly one request model and one reply model.
The tables at the bottom of this module are the complete routing surface;
adding a command means adding a model pair and a table entry.
"""
from __future__ import annotations

import json
from typing import Any, ClassVar, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from edgeplane.errors import PayloadDeserialization, UnroutableSubject
from edgeplane.settings_vcs import SettingsApp, SettingsFormat
from edgeplane.systemd_units import UnitChangeKind, UnitFileState

PI_ID_PLACEHOLDER = "{pi_id}"

# -----------------------------------------------------------------------------
# Subjects
# -----------------------------------------------------------------------------

RECORDING_LOAD = "pi.{pi_id}.command.camera.recording.load"
RECORDING_START = "pi.{pi_id}.command.camera.recording.start"
RECORDING_STOP = "pi.{pi_id}.command.camera.recording.stop"
RECORDING_SYNC = "pi.{pi_id}.command.camera.recording.sync"
PIPELINES_START = "pi.{pi_id}.command.pipelines.start"
SETTINGS_FILE_LOAD = "pi.{pi_id}.settings.file.load"
SETTINGS_FILE_APPLY = "pi.{pi_id}.settings.file.apply"
SETTINGS_FILE_REVERT = "pi.{pi_id}.settings.file.revert"
CAMERA_SETTINGS_LOAD = "pi.{pi_id}.settings.camera.load"
CAMERA_SETTINGS_APPLY = "pi.{pi_id}.settings.camera.apply"
_SYSTEMD_MANAGER = "pi.{pi_id}.dbus.org.freedesktop.systemd1.Manager"
SYSTEMD_DISABLE_UNIT = f"{_SYSTEMD_MANAGER}.DisableUnit"
SYSTEMD_ENABLE_UNIT = f"{_SYSTEMD_MANAGER}.EnableUnit"
SYSTEMD_GET_UNIT = f"{_SYSTEMD_MANAGER}.GetUnit"
SYSTEMD_GET_UNIT_FILE_STATE = f"{_SYSTEMD_MANAGER}.GetUnitFileState"
SYSTEMD_RESTART_UNIT = f"{_SYSTEMD_MANAGER}.RestartUnit"
SYSTEMD_START_UNIT = f"{_SYSTEMD_MANAGER}.StartUnit"
SYSTEMD_STOP_UNIT = f"{_SYSTEMD_MANAGER}.StopUnit"


def replace_subject_pattern(subject: str, pattern: str, replace: str) -> str:
    return subject.replace(pattern, replace)


def to_subject(subject_pattern: str, device_id: str) -> str:
    return replace_subject_pattern(subject_pattern, PI_ID_PLACEHOLDER, device_id)


def to_subject_pattern(subject: str, device_id: str) -> str:
    """Map a concrete subject back to its pattern; only the device segment is replaced."""
    prefix = f"pi.{device_id}."
    if subject.startswith(prefix):
        return f"pi.{PI_ID_PLACEHOLDER}.{subject[len(prefix):]}"
    return subject


# -----------------------------------------------------------------------------
# Shared payload models
# -----------------------------------------------------------------------------

class Schema(BaseModel):
    model_config = ConfigDict(extra="forbid")


class VideoRecordingModel(Schema):
    id: str
    capture_done: bool
    cloud_sync_done: bool
    dir: str
    recording_start: Optional[str] = None
    recording_end: Optional[str] = None
    gcode_file_name: Optional[str] = None


class VideoRecordingPartModel(Schema):
    id: str
    part: int
    size: int
    deleted: bool
    sync_start: Optional[str] = None
    sync_end: Optional[str] = None
    file_name: str
    video_recording_id: str


class GitCommitModel(Schema):
    id: str
    header: str
    message: str
    ts: int


class SettingsFileModel(Schema):
    app: SettingsApp
    file_name: str
    file_format: SettingsFormat
    content: str


class CameraSettings(Schema):
    device_name: str
    width: int
    height: int
    framerate: int


class SnapshotSettings(Schema):
    enabled: bool
    path: str


class HlsSettings(Schema):
    enabled: bool
    segments: str
    playlist: str
    playlist_root: str


class RtpSettings(Schema):
    video_udp_port: int
    overlay_udp_port: int


class DetectionSettings(Schema):
    tensor_width: int
    tensor_height: int
    model_file: str
    label_file: str
    nms_threshold: int
    nats_server_uri: str


class RecordingSettings(Schema):
    cloud_sync: bool
    part_duration_sec: int = 60


class VideoStreamSettings(Schema):
    camera: CameraSettings
    snapshot: SnapshotSettings
    hls: HlsSettings
    rtp: RtpSettings
    detection: DetectionSettings
    recording: RecordingSettings


class PipelineNodeModel(Schema):
    name: str
    description: str
    upstream: Optional[str] = None


class SystemdUnitModel(Schema):
    id: str
    description: str
    load_state: str
    active_state: str
    sub_state: str
    unit_file_state: str
    fragment_path: str


class SystemdUnitChangeModel(Schema):
    change: UnitChangeKind
    file: str
    destination: str


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------

class Request(Schema):
    subject_pattern: ClassVar[str]


class CameraRecordingLoadRequest(Request):
    subject_pattern: ClassVar[str] = RECORDING_LOAD


class CameraRecordingStartRequest(Request):
    subject_pattern: ClassVar[str] = RECORDING_START
    gcode_file_name: Optional[str] = None


class CameraRecordingStopRequest(Request):
    subject_pattern: ClassVar[str] = RECORDING_STOP


class CameraRecordingSyncRequest(Request):
    subject_pattern: ClassVar[str] = RECORDING_SYNC
    recording_id: Optional[str] = None
    cloud_sync_done: bool = False


class PipelinesStartRequest(Request):
    subject_pattern: ClassVar[str] = PIPELINES_START


class SettingsFileLoadRequest(Request):
    subject_pattern: ClassVar[str] = SETTINGS_FILE_LOAD


class SettingsFileApplyRequest(Request):
    subject_pattern: ClassVar[str] = SETTINGS_FILE_APPLY
    file: SettingsFileModel
    git_head_commit: Optional[str] = None
    git_commit_msg: Optional[str] = None


class SettingsFileRevertRequest(Request):
    subject_pattern: ClassVar[str] = SETTINGS_FILE_REVERT
    app: SettingsApp
    git_commit: str


class CameraSettingsFileLoadRequest(Request):
    subject_pattern: ClassVar[str] = CAMERA_SETTINGS_LOAD


class CameraSettingsFileApplyRequest(Request, VideoStreamSettings):
    subject_pattern: ClassVar[str] = CAMERA_SETTINGS_APPLY


class SystemdManagerDisableUnitsRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_DISABLE_UNIT
    files: list[str]


class SystemdManagerEnableUnitsRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_ENABLE_UNIT
    files: list[str]


class SystemdManagerGetUnitRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_GET_UNIT
    unit_name: str


class SystemdManagerGetUnitFileStateRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_GET_UNIT_FILE_STATE
    unit_name: str


class SystemdManagerRestartUnitRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_RESTART_UNIT
    unit_name: str


class SystemdManagerStartUnitRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_START_UNIT
    unit_name: str


class SystemdManagerStopUnitRequest(Request):
    subject_pattern: ClassVar[str] = SYSTEMD_STOP_UNIT
    unit_name: str


# -----------------------------------------------------------------------------
# Replies
# -----------------------------------------------------------------------------

class Reply(Schema):
    subject_pattern: ClassVar[str]

    def to_wire(self) -> dict[str, Any]:
        return {"subject_pattern": self.subject_pattern, **self.model_dump(mode="json")}


class CameraRecordingLoadReply(Reply):
    subject_pattern: ClassVar[str] = RECORDING_LOAD
    current: Optional[VideoRecordingModel] = None
    recordings: list[VideoRecordingModel]


class CameraRecordingStartReply(Reply):
    subject_pattern: ClassVar[str] = RECORDING_START
    recording: VideoRecordingModel


class CameraRecordingStopReply(Reply):
    subject_pattern: ClassVar[str] = RECORDING_STOP
    recording: Optional[VideoRecordingModel] = None


class CameraRecordingSyncReply(Reply):
    subject_pattern: ClassVar[str] = RECORDING_SYNC
    recording: VideoRecordingModel
    parts: list[VideoRecordingPartModel]


class PipelinesStartReply(Reply):
    subject_pattern: ClassVar[str] = PIPELINES_START
    pipelines: list[PipelineNodeModel]


class SettingsFileLoadReply(Reply):
    subject_pattern: ClassVar[str] = SETTINGS_FILE_LOAD
    files: list[SettingsFileModel]
    git_head_commit: str
    git_history: list[GitCommitModel]


class SettingsFileApplyReply(Reply):
    subject_pattern: ClassVar[str] = SETTINGS_FILE_APPLY
    file: SettingsFileModel
    git_head_commit: str
    git_history: list[GitCommitModel]


class SettingsFileRevertReply(Reply):
    subject_pattern: ClassVar[str] = SETTINGS_FILE_REVERT
    app: SettingsApp
    files: list[SettingsFileModel]
    git_head_commit: str
    git_history: list[GitCommitModel]


class CameraSettingsFileLoadReply(Reply, VideoStreamSettings):
    subject_pattern: ClassVar[str] = CAMERA_SETTINGS_LOAD


class CameraSettingsFileApplyReply(Reply, VideoStreamSettings):
    subject_pattern: ClassVar[str] = CAMERA_SETTINGS_APPLY


class SystemdManagerDisableUnitsReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_DISABLE_UNIT
    changes: list[SystemdUnitChangeModel]


class SystemdManagerEnableUnitsReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_ENABLE_UNIT
    changes: list[SystemdUnitChangeModel]


class SystemdManagerGetUnitReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_GET_UNIT
    unit: SystemdUnitModel


class SystemdManagerGetUnitFileStateReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_GET_UNIT_FILE_STATE
    unit_file_state: UnitFileState


class SystemdManagerRestartUnitReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_RESTART_UNIT
    job: Optional[str] = None
    unit: SystemdUnitModel


class SystemdManagerStartUnitReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_START_UNIT
    job: Optional[str] = None
    unit: SystemdUnitModel


class SystemdManagerStopUnitReply(Reply):
    subject_pattern: ClassVar[str] = SYSTEMD_STOP_UNIT
    job: Optional[str] = None
    unit: SystemdUnitModel


class ErrorReply(Schema):
    subject_pattern: str
    kind: str
    detail: str

    def to_wire(self) -> dict[str, Any]:
        return {"error": self.model_dump(mode="json")}


# -----------------------------------------------------------------------------
# Routing tables
# -----------------------------------------------------------------------------

REQUESTS: dict[str, type[Request]] = {
    RECORDING_LOAD: CameraRecordingLoadRequest,
    RECORDING_START: CameraRecordingStartRequest,
    RECORDING_STOP: CameraRecordingStopRequest,
    RECORDING_SYNC: CameraRecordingSyncRequest,
    PIPELINES_START: PipelinesStartRequest,
    SETTINGS_FILE_LOAD: SettingsFileLoadRequest,
    SETTINGS_FILE_APPLY: SettingsFileApplyRequest,
    SETTINGS_FILE_REVERT: SettingsFileRevertRequest,
    CAMERA_SETTINGS_LOAD: CameraSettingsFileLoadRequest,
    CAMERA_SETTINGS_APPLY: CameraSettingsFileApplyRequest,
    SYSTEMD_DISABLE_UNIT: SystemdManagerDisableUnitsRequest,
    SYSTEMD_ENABLE_UNIT: SystemdManagerEnableUnitsRequest,
    SYSTEMD_GET_UNIT: SystemdManagerGetUnitRequest,
    SYSTEMD_GET_UNIT_FILE_STATE: SystemdManagerGetUnitFileStateRequest,
    SYSTEMD_RESTART_UNIT: SystemdManagerRestartUnitRequest,
    SYSTEMD_START_UNIT: SystemdManagerStartUnitRequest,
    SYSTEMD_STOP_UNIT: SystemdManagerStopUnitRequest,
}

REPLIES: dict[str, type[Reply]] = {
    RECORDING_LOAD: CameraRecordingLoadReply,
    RECORDING_START: CameraRecordingStartReply,
    RECORDING_STOP: CameraRecordingStopReply,
    RECORDING_SYNC: CameraRecordingSyncReply,
    PIPELINES_START: PipelinesStartReply,
    SETTINGS_FILE_LOAD: SettingsFileLoadReply,
    SETTINGS_FILE_APPLY: SettingsFileApplyReply,
    SETTINGS_FILE_REVERT: SettingsFileRevertReply,
    CAMERA_SETTINGS_LOAD: CameraSettingsFileLoadReply,
    CAMERA_SETTINGS_APPLY: CameraSettingsFileApplyReply,
    SYSTEMD_DISABLE_UNIT: SystemdManagerDisableUnitsReply,
    SYSTEMD_ENABLE_UNIT: SystemdManagerEnableUnitsReply,
    SYSTEMD_GET_UNIT: SystemdManagerGetUnitReply,
    SYSTEMD_GET_UNIT_FILE_STATE: SystemdManagerGetUnitFileStateReply,
    SYSTEMD_RESTART_UNIT: SystemdManagerRestartUnitReply,
    SYSTEMD_START_UNIT: SystemdManagerStartUnitReply,
    SYSTEMD_STOP_UNIT: SystemdManagerStopUnitReply,
}


def decode(subject_pattern: str, payload: bytes | str | Mapping[str, Any] | None) -> Request:
    request_cls = REQUESTS.get(subject_pattern)
    if request_cls is None:
        raise UnroutableSubject(f"No request is registered for subject {subject_pattern!r}")

    if payload is None:
        data: Any = {}
    elif isinstance(payload, (bytes, bytearray, str)):
        if isinstance(payload, (bytes, bytearray)):
            try:
                text = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise PayloadDeserialization(f"{subject_pattern}: payload is not valid UTF-8: {exc}") from exc
        else:
            text = payload
        if not text.strip():
            data = {}
        else:
            try:
                data = json.loads(text)
            except ValueError as exc:
                raise PayloadDeserialization(f"{subject_pattern}: invalid JSON: {exc}") from exc
    else:
        data = dict(payload)

    if isinstance(data, dict) and "subject_pattern" in data:
        data = dict(data)
        tagged = data.pop("subject_pattern")
        if tagged != subject_pattern:
            raise PayloadDeserialization(
                f"Payload is tagged {tagged!r} but was sent on {subject_pattern!r}"
            )

    try:
        return request_cls.model_validate(data)
    except ValidationError as exc:
        raise PayloadDeserialization(f"{subject_pattern}: {exc}") from exc
