"""
Recording rows persisted with SQLAlchemy on a local SQLite file.

Only the narrow set of operations the recording manager needs is exposed:
current-recording lookup, insert, update-by-id, listing and part indexing.
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from edgeplane.errors import RecordingNotFound

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# =============================================================================
# Models
# =============================================================================

class VideoRecording(Base):
    """One capture session. ``capture_done=False`` marks the current recording."""
    __tablename__ = "video_recordings"

    id = Column(String(36), primary_key=True)
    capture_done = Column(Boolean, nullable=False, default=False, index=True)
    cloud_sync_done = Column(Boolean, nullable=False, default=False)
    dir = Column(String(500), nullable=False)
    recording_start = Column(DateTime)
    recording_end = Column(DateTime)
    gcode_file_name = Column(String(255))

    parts = relationship(
        "VideoRecordingPart",
        back_populates="recording",
        cascade="all, delete-orphan",
        order_by="VideoRecordingPart.part",
        lazy="selectin",
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "capture_done": bool(self.capture_done),
            "cloud_sync_done": bool(self.cloud_sync_done),
            "dir": self.dir,
            "recording_start": _isoformat(self.recording_start),
            "recording_end": _isoformat(self.recording_end),
            "gcode_file_name": self.gcode_file_name,
        }


class VideoRecordingPart(Base):
    """One uploadable chunk of a recording."""
    __tablename__ = "video_recording_parts"
    __table_args__ = (UniqueConstraint("video_recording_id", "part"),)

    id = Column(String(36), primary_key=True)
    part = Column(Integer, nullable=False)
    size = Column(Integer, nullable=False, default=0)
    deleted = Column(Boolean, nullable=False, default=False)
    sync_start = Column(DateTime)
    sync_end = Column(DateTime)
    file_name = Column(String(500), nullable=False)
    video_recording_id = Column(
        String(36), ForeignKey("video_recordings.id", ondelete="CASCADE"), nullable=False, index=True
    )

    recording = relationship("VideoRecording", back_populates="parts")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "part": self.part,
            "size": self.size,
            "deleted": bool(self.deleted),
            "sync_start": _isoformat(self.sync_start),
            "sync_end": _isoformat(self.sync_end),
            "file_name": self.file_name,
            "video_recording_id": self.video_recording_id,
        }


# =============================================================================
# Store
# =============================================================================

_UPDATABLE = frozenset(
    {"capture_done", "cloud_sync_done", "recording_start", "recording_end", "gcode_file_name"}
)


class RecordingStore:
    """Blocking data access for recording rows; run from a worker pool."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()

    def get_current(self) -> Optional[VideoRecording]:
        with self.get_session() as session:
            return (
                session.query(VideoRecording)
                .filter(VideoRecording.capture_done.is_(False))
                .order_by(VideoRecording.recording_start.desc())
                .first()
            )

    def insert(self, recording: VideoRecording) -> VideoRecording:
        with self.get_session() as session:
            session.add(recording)
            session.commit()
            session.refresh(recording)
            return recording

    def get_by_id(self, recording_id: str) -> Optional[VideoRecording]:
        with self.get_session() as session:
            return session.get(VideoRecording, recording_id)

    def get_all(self) -> list[VideoRecording]:
        with self.get_session() as session:
            return (
                session.query(VideoRecording)
                .order_by(VideoRecording.recording_start.desc(), VideoRecording.id)
                .all()
            )

    def update(self, recording_id: str, **fields: Any) -> VideoRecording:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update recording fields: {sorted(unknown)}")
        with self.get_session() as session:
            recording = session.get(VideoRecording, recording_id)
            if recording is None:
                raise RecordingNotFound(f"No recording with id={recording_id}")
            for key, value in fields.items():
                setattr(recording, key, value)
            session.commit()
            session.refresh(recording)
            return recording

    def upsert_parts(
        self, recording_id: str, parts: Iterable[Mapping[str, Any]]
    ) -> list[VideoRecordingPart]:
        """Insert new parts and refresh ``size`` of known ones, keyed by part index."""
        with self.get_session() as session:
            recording = session.get(VideoRecording, recording_id)
            if recording is None:
                raise RecordingNotFound(f"No recording with id={recording_id}")
            existing = {part.part: part for part in recording.parts}
            for entry in parts:
                index = int(entry["part"])
                row = existing.get(index)
                if row is None:
                    row = VideoRecordingPart(
                        id=str(entry["id"]),
                        part=index,
                        size=int(entry.get("size", 0)),
                        deleted=False,
                        file_name=str(entry["file_name"]),
                        video_recording_id=recording_id,
                    )
                    session.add(row)
                    existing[index] = row
                else:
                    row.size = int(entry.get("size", row.size))
            session.commit()
            return (
                session.query(VideoRecordingPart)
                .filter(VideoRecordingPart.video_recording_id == recording_id)
                .order_by(VideoRecordingPart.part)
                .all()
            )
