"""Read-only view of the journal record store.

These tables are owned by the main journal backend. The export service only
reads them, so there is no migration history here.
"""
from sqlmodel import Field, SQLModel, Column, DateTime, String
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaCategory(str, Enum):
    images = "images"
    audio = "audio"


class Entry(SQLModel, table=True):
    __tablename__ = "entries"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
    )
    user_uid: str = Field(sa_column=Column(String, index=True, nullable=False))
    title: str = Field(default="")
    description: str = Field(default="")
    visibility: str = Field(default="private")
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class Tag(SQLModel, table=True):
    __tablename__ = "tags"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    entry_id: str = Field(foreign_key="entries.id", index=True)
    key: str
    value: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class Location(SQLModel, table=True):
    __tablename__ = "locations"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    entry_id: str = Field(foreign_key="entries.id", index=True)
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    address: Optional[str] = Field(default=None)
    city: Optional[str] = Field(default=None)
    state: Optional[str] = Field(default=None)
    zip: Optional[str] = Field(default=None)
    country: Optional[str] = Field(default=None)
    country_code: Optional[str] = Field(default=None)
    display_name: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class Image(SQLModel, table=True):
    __tablename__ = "images"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    entry_id: str = Field(foreign_key="entries.id", index=True)
    url: str
    upload_order: int = Field(default=0)


class Audio(SQLModel, table=True):
    __tablename__ = "audio"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    entry_id: str = Field(foreign_key="entries.id", index=True)
    url: str
    upload_order: int = Field(default=0)


MEDIA_TABLES = {
    MediaCategory.images: Image,
    MediaCategory.audio: Audio,
}
