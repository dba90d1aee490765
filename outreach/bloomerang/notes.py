# outreach/bloomerang/notes.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.paging import PageWalk, walk_pages
from outreach.bloomerang.selection import Selection, SelectionPolicy, keyword_pattern, select_for_summary
from outreach.utils.common import iso_or_none, parse_datetime, pick_int, pick_string

NOTES_PATH = "notes"
CREATED_DATE_PATHS = ("AuditTrail.CreatedDate", "CreatedDate", "Date", "createdDate")
CREATED_NAME_PATHS = ("AuditTrail.CreatedName", "AuditTrail.CreatedBy", "AuditTrail.CreatedUser", "createdName")

NOTES_POLICY = SelectionPolicy(
    keywords=keyword_pattern(
        ["call", "email", "met", "prefers", "interested", "update", "prayer", "concern", "follow-up"]
    ),
    small_threshold=20,
    keyword_extra=10,
)


@dataclass(frozen=True)
class Note:
    id: int
    account_id: int
    created_date: datetime
    created_name: Optional[str]
    note: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "createdDate": self.created_date.isoformat(),
            "createdName": self.created_name,
            "note": self.note,
        }


def normalize_note(record: Dict[str, Any]) -> Optional[Note]:
    note_id = pick_int(record, ("Id", "id"))
    created = parse_datetime(pick_string(record, CREATED_DATE_PATHS))
    if note_id is None or created is None:
        return None
    return Note(
        id=note_id,
        account_id=pick_int(record, ("AccountId", "accountId")) or 0,
        created_date=created,
        created_name=pick_string(record, CREATED_NAME_PATHS),
        note=pick_string(record, ("Note", "note")) or "",
    )


def normalize_notes(records: Iterable[Dict[str, Any]]) -> List[Note]:
    return [n for n in (normalize_note(r) for r in records) if n is not None]


def build_activity_meta(dates: Iterable[Optional[datetime]]) -> Dict[str, Any]:
    """Shared by notes and interactions: count plus newest/oldest created date."""
    all_dates = list(dates)
    valid = sorted((d for d in all_dates if d is not None), reverse=True)
    return {
        "totalFetched": len(all_dates),
        "newestCreatedDate": iso_or_none(valid[0]) if valid else None,
        "oldestCreatedDate": iso_or_none(valid[-1]) if valid else None,
    }


async def fetch_household_notes(client: BloomerangClient, member_ids: Sequence[int]) -> tuple[PageWalk, List[Note]]:
    params = {
        "constituent": "|".join(str(i) for i in member_ids),
        "orderBy": "CreatedDate",
        "orderDirection": "Desc",
    }
    walk = await walk_pages(client, NOTES_PATH, params)
    return walk, normalize_notes(walk.items) if walk.ok else []


def select_notes_for_summary(notes: Sequence[Note], now: Optional[datetime] = None) -> Selection[Note]:
    return select_for_summary(
        notes,
        NOTES_POLICY,
        record_id=lambda n: n.id,
        when=lambda n: n.created_date,
        text=lambda n: n.note,
        now=now,
    )
