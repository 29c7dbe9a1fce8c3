import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from src.db.models import MediaCategory
from src.errors import InvalidJobTransition
from src.export.progress import compute_progress


MAX_ERROR_MESSAGE_LENGTH = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {ExportStatusEnum.COMPLETED, ExportStatusEnum.FAILED}


class ExportCounters(BaseModel):
    """One counter per unit of work: entries, then primary and secondary media."""
    entries: int = Field(default=0, ge=0)
    images: int = Field(default=0, ge=0)
    audio: int = Field(default=0, ge=0)

    def as_tuple(self) -> tuple:
        return (self.entries, self.images, self.audio)


class ExportJob(BaseModel):
    """Lifecycle record of one export request, stored whole in the job status store."""

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    status: ExportStatusEnum = ExportStatusEnum.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    totals: ExportCounters = Field(default_factory=ExportCounters)
    processed: ExportCounters = Field(default_factory=ExportCounters)
    work_dir: str = ""
    archive_location: str = ""
    error_message: str = ""

    @model_validator(mode="after")
    def _check_terminal_outcome(self):
        if self.status == ExportStatusEnum.COMPLETED:
            if not self.archive_location or self.error_message:
                raise ValueError("completed export needs an archive location and no error")
        elif self.status == ExportStatusEnum.FAILED:
            if not self.error_message or self.archive_location:
                raise ValueError("failed export needs an error and no archive location")
        elif self.archive_location or self.error_message:
            raise ValueError(f"{self.status.value} export cannot carry an outcome yet")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _ensure_not_terminal(self, action: str):
        if self.is_terminal:
            raise InvalidJobTransition(
                f"Cannot {action} export job {self.job_id}: already {self.status.value}"
            )

    def recompute_progress(self):
        self.progress = compute_progress(self.totals.as_tuple(), self.processed.as_tuple())

    def mark_running(self):
        self._ensure_not_terminal("start")
        self.status = ExportStatusEnum.RUNNING

    def set_totals(self, totals: ExportCounters):
        self._ensure_not_terminal("count")
        self.totals = totals.model_copy()
        self.recompute_progress()

    def record_processed(self, category: str) -> bool:
        """Count one attempted unit of work.

        Returns False when the record store handed out more units than it
        counted up front; the total is raised to match so processed never
        exceeds totals.
        """
        self._ensure_not_terminal("advance")
        done = getattr(self.processed, category) + 1
        setattr(self.processed, category, done)
        within_totals = done <= getattr(self.totals, category)
        if not within_totals:
            setattr(self.totals, category, done)
        self.recompute_progress()
        return within_totals

    def mark_completed(self, archive_location: str):
        self._ensure_not_terminal("complete")
        if not archive_location:
            raise ValueError("archive_location is required to complete an export")
        self.status = ExportStatusEnum.COMPLETED
        self.archive_location = archive_location
        self.error_message = ""
        self.progress = 100
        self.completed_at = _utcnow()

    def mark_failed(self, error_message: str):
        self._ensure_not_terminal("fail")
        self.status = ExportStatusEnum.FAILED
        self.error_message = (error_message or "").strip()[:MAX_ERROR_MESSAGE_LENGTH] or "failed"
        self.archive_location = ""
        self.completed_at = _utcnow()


# Records read from the journal record store

class TagItem(BaseModel):
    key: str
    value: Optional[str] = None


class LocationItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    display_name: Optional[str] = None


class ExportRecord(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    tags: List[TagItem] = Field(default_factory=list)
    locations: List[LocationItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# HTTP request / response shapes

class ExportDataRequest(BaseModel):
    uid: str = Field(..., min_length=1)

    model_config = {
        "json_schema_extra": {
            "example": {"uid": "3f1c2a9e-user-uid"}
        }
    }


class ExportDataResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    export_job_id: str
    message: str = "Export started"


class ExportProgressResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    export_job_id: str
    status: ExportStatusEnum
    progress: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    totals: ExportCounters
    processed: ExportCounters
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: ExportJob) -> "ExportProgressResponse":
        return cls(
            export_job_id=job.job_id,
            status=job.status,
            progress=job.progress,
            started_at=job.started_at,
            completed_at=job.completed_at,
            totals=job.totals.model_copy(),
            processed=job.processed.model_copy(),
            error=job.error_message or None,
        )


MEDIA_COUNTER = {
    MediaCategory.images: "images",
    MediaCategory.audio: "audio",
}
