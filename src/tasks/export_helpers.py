import json
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List

import pandas as pd

from src.export.schemas import ExportRecord, LocationItem, TagItem

TABULAR_FILENAME = "entries.csv"
COLUMNS = ["id", "title", "description", "locations", "tags", "createdAt", "updatedAt"]


def _drop_empty(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in item.items() if v is not None and v != ""}


def _compact_json(items: List[Dict[str, Any]]) -> str:
    return json.dumps(items, separators=(",", ":"), ensure_ascii=False)


def tags_json(tags: List[TagItem]) -> str:
    return _compact_json([_drop_empty(t.model_dump()) for t in tags])


def locations_json(locations: List[LocationItem]) -> str:
    return _compact_json([_drop_empty(loc.model_dump(by_alias=True)) for loc in locations])


def serialize_record_row(record: ExportRecord) -> Dict[str, str]:
    """One tabular row; tags and locations are embedded as JSON text."""
    return {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "locations": locations_json(record.locations),
        "tags": tags_json(record.tags),
        "createdAt": record.created_at.isoformat(),
        "updatedAt": record.updated_at.isoformat(),
    }


class TabularWriter:
    """Appends export rows to ``entries.csv`` as they stream in.

    The header is written on open, so an owner with no entries still gets a
    valid (empty) table.
    """

    def __init__(self, path: Path):
        self.path = path
        self._fh = open(path, "w", encoding="utf-8", newline="")
        pd.DataFrame(columns=COLUMNS).to_csv(self._fh, index=False, lineterminator="\n")
        self._fh.flush()
        self.rows_written = 0

    def write_row(self, record: ExportRecord):
        df = pd.DataFrame([serialize_record_row(record)], columns=COLUMNS)
        df.to_csv(self._fh, header=False, index=False, lineterminator="\n")
        self._fh.flush()
        self.rows_written += 1

    def close(self):
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def media_filename(ref: str) -> str:
    """Destination name for a media reference: its last path segment."""
    name = PurePosixPath(ref.split("?", 1)[0]).name
    if not name or name in (".", ".."):
        raise ValueError(f"media reference has no file name: {ref}")
    return name
