# src/crud/crud_records.py
from typing import AsyncIterator, List, Protocol, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import Entry, Tag, Location, MediaCategory, MEDIA_TABLES
from src.export.schemas import ExportCounters, ExportRecord, TagItem, LocationItem


class RecordStore(Protocol):
    """What the export worker needs from the journal record store."""

    async def count_owner_records(self, owner_id: str) -> ExportCounters: ...

    def stream_owner_records(self, owner_id: str) -> AsyncIterator[ExportRecord]: ...

    async def list_record_media(self, record_id: str, category: MediaCategory) -> List[str]: ...


class SQLRecordStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def count_owner_records(self, owner_id: str) -> ExportCounters:
        """Count the owner's entries and the media attached to them."""
        owner_entries = select(Entry.id).where(Entry.user_uid == owner_id)

        async with self.session_maker() as session:
            entries = await session.execute(
                select(func.count(Entry.id)).where(Entry.user_uid == owner_id)
            )
            counts = {"entries": entries.scalar_one()}

            for category, table in MEDIA_TABLES.items():
                result = await session.execute(
                    select(func.count(table.id)).where(table.entry_id.in_(owner_entries))
                )
                counts[category.value] = result.scalar_one()

        return ExportCounters(**counts)

    async def stream_owner_records(self, owner_id: str) -> AsyncIterator[ExportRecord]:
        """
        Yield the owner's entries in creation order without loading them all.
        Tags and locations are fetched per entry on a separate session, since the
        streaming session's connection is busy until the cursor is exhausted.
        """
        query = (
            select(Entry)
            .where(Entry.user_uid == owner_id)
            .order_by(Entry.created_at, Entry.id)
        )

        async with self.session_maker() as session:
            result_stream = await session.stream_scalars(query)
            async for entry in result_stream:
                tags, locations = await self._load_sub_attributes(entry.id)
                yield ExportRecord(
                    id=entry.id,
                    title=entry.title or "",
                    description=entry.description or "",
                    tags=tags,
                    locations=locations,
                    created_at=entry.created_at,
                    updated_at=entry.updated_at,
                )

    async def _load_sub_attributes(self, entry_id: str) -> Tuple[List[TagItem], List[LocationItem]]:
        async with self.session_maker() as session:
            tag_rows = await session.execute(
                select(Tag).where(Tag.entry_id == entry_id).order_by(Tag.created_at)
            )
            location_rows = await session.execute(
                select(Location).where(Location.entry_id == entry_id).order_by(Location.created_at)
            )

            tags = [TagItem(key=t.key, value=t.value) for t in tag_rows.scalars().all()]
            locations = [
                LocationItem(
                    latitude=loc.latitude,
                    longitude=loc.longitude,
                    address=loc.address,
                    city=loc.city,
                    state=loc.state,
                    zip=loc.zip,
                    country=loc.country,
                    country_code=loc.country_code,
                    display_name=loc.display_name,
                )
                for loc in location_rows.scalars().all()
            ]
        return tags, locations

    async def list_record_media(self, record_id: str, category: MediaCategory) -> List[str]:
        table = MEDIA_TABLES[category]
        async with self.session_maker() as session:
            result = await session.execute(
                select(table.url).where(table.entry_id == record_id).order_by(table.upload_order)
            )
            return list(result.scalars().all())
