"""Failure kinds surfaced by the command plane engines.

Every engine operation raises a subclass of :class:`EdgeplaneError`. The
dispatcher turns these into typed error replies using the ``kind`` attribute,
so the strings below are part of the wire contract.
"""
from __future__ import annotations


class EdgeplaneError(Exception):
    kind = "edgeplane_error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail


# -----------------------------------------------------------------------------
# Protocol
# -----------------------------------------------------------------------------

class UnroutableSubject(EdgeplaneError):
    kind = "unroutable_subject"


class PayloadDeserialization(EdgeplaneError):
    kind = "payload_deserialization"


# -----------------------------------------------------------------------------
# Settings version control
# -----------------------------------------------------------------------------

class VcsError(EdgeplaneError):
    kind = "vcs_error"


class VcsIoError(VcsError):
    kind = "vcs_io"


class GitOperationError(VcsError):
    kind = "git_operation"

    def __init__(self, detail: str = "", *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(detail)
        self.returncode = returncode
        self.stderr = stderr


class RepositoryUninitialized(VcsError):
    kind = "vcs_uninitialized"


class RevertConflict(VcsError):
    kind = "revert_conflict"


# -----------------------------------------------------------------------------
# Pipeline provisioning
# -----------------------------------------------------------------------------

class PipelineProvisioningError(EdgeplaneError):
    kind = "pipeline_provisioning"

    def __init__(self, detail: str = "", *, node: str = "", status: int | None = None) -> None:
        super().__init__(detail)
        self.node = node
        self.status = status


class PipelineConflictIgnored(PipelineProvisioningError):
    """Node already exists on the pipeline endpoint; callers treat it as success."""

    kind = "pipeline_conflict_ignored"


class PipelineFatal(PipelineProvisioningError):
    kind = "pipeline_fatal"


# -----------------------------------------------------------------------------
# Unit control
# -----------------------------------------------------------------------------

class UnitControlError(EdgeplaneError):
    kind = "unit_control"


class BusTransportError(UnitControlError):
    kind = "bus_transport"


class UnknownUnitState(UnitControlError):
    kind = "unknown_unit_state"


class UnknownChangeKind(UnitControlError):
    kind = "unknown_change_kind"


# -----------------------------------------------------------------------------
# Recording lifecycle
# -----------------------------------------------------------------------------

class RecordingStateError(EdgeplaneError):
    kind = "recording_state"


class NoCurrentRecording(RecordingStateError):
    kind = "no_current_recording"


class RecordingAlreadyActive(RecordingStateError):
    kind = "recording_already_active"


class RecordingNotFound(RecordingStateError):
    kind = "recording_not_found"
