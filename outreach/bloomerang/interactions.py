# outreach/bloomerang/interactions.py
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.notes import CREATED_NAME_PATHS
from outreach.bloomerang.paging import PageWalk, walk_pages
from outreach.bloomerang.selection import Selection, SelectionPolicy, keyword_pattern, select_for_summary
from outreach.utils.common import (
    first_present,
    iso_or_none,
    normalize_boolean,
    parse_datetime,
    pick_int,
    pick_string,
)

INTERACTIONS_PATH = "interactions"

PERSONAL_CHANNELS = frozenset({"phone", "email", "text", "inperson", "in person"})
MASS_CHANNELS = frozenset({"massemail", "mass email", "mass-email"})
OTHER_CHANNEL_KEYWORDS = re.compile(r"(call|text|emailed|met|visited|spoke|talked|follow up|follow-up)", re.IGNORECASE)

INTERACTIONS_POLICY = SelectionPolicy(
    keywords=keyword_pattern(
        ["interested", "prefers", "asked", "building", "tile", "follow up", "follow-up",
         "call", "pledge", "increase", "concern"]
    ),
    pad_to=30,
    hard_cap=30,
)


@dataclass(frozen=True)
class Interaction:
    id: int
    account_id: int
    channel: str
    purpose: Optional[str]
    subject: Optional[str]
    is_inbound: Optional[bool]
    date: Optional[datetime]
    created_date: datetime
    created_name: Optional[str]
    note_text: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "channel": self.channel,
            "purpose": self.purpose,
            "subject": self.subject,
            "isInbound": self.is_inbound,
            "date": iso_or_none(self.date),
            "createdDate": self.created_date.isoformat(),
            "createdName": self.created_name,
            "noteText": self.note_text,
        }


def normalize_interaction(record: Dict[str, Any]) -> Optional[Interaction]:
    interaction_id = pick_int(record, ("Id", "id"))
    created = parse_datetime(pick_string(record, ("AuditTrail.CreatedDate", "CreatedDate", "createdDate")))
    if interaction_id is None or created is None:
        return None
    return Interaction(
        id=interaction_id,
        account_id=pick_int(record, ("AccountId", "accountId")) or 0,
        channel=pick_string(record, ("Channel", "channel")) or "",
        purpose=pick_string(record, ("Purpose", "purpose")),
        subject=pick_string(record, ("Subject", "subject")),
        is_inbound=normalize_boolean(first_present(record, ("IsInbound", "isInbound"))),
        date=parse_datetime(pick_string(record, ("Date", "date"))),
        created_date=created,
        created_name=pick_string(record, CREATED_NAME_PATHS),
        note_text=pick_string(record, ("Note", "note")),
    )


def normalize_interactions(records: Iterable[Dict[str, Any]]) -> List[Interaction]:
    return [i for i in (normalize_interaction(r) for r in records) if i is not None]


def is_personal_interaction(interaction: Interaction) -> bool:
    channel = (interaction.channel or "").strip().lower()
    if not channel or channel in MASS_CHANNELS:
        return False
    if channel in PERSONAL_CHANNELS:
        return True
    if channel == "other":
        return bool(interaction.note_text and OTHER_CHANNEL_KEYWORDS.search(interaction.note_text))
    return False


def filter_personal_interactions(interactions: Iterable[Interaction]) -> List[Interaction]:
    return [i for i in interactions if is_personal_interaction(i)]


def last_meaningful_interaction(interactions: Sequence[Interaction]) -> Optional[Interaction]:
    if not interactions:
        return None
    return max(interactions, key=lambda i: i.created_date)


async def fetch_all_interactions(
    client: BloomerangClient, member_ids: Sequence[int]
) -> tuple[PageWalk, List[Interaction]]:
    params = {
        "constituent": "|".join(str(i) for i in member_ids),
        "orderBy": "CreatedDate",
        "orderDirection": "Desc",
    }
    walk = await walk_pages(client, INTERACTIONS_PATH, params)
    return walk, normalize_interactions(walk.items) if walk.ok else []


def select_interactions_for_summary(
    interactions: Sequence[Interaction], now: Optional[datetime] = None
) -> Selection[Interaction]:
    return select_for_summary(
        interactions,
        INTERACTIONS_POLICY,
        record_id=lambda i: i.id,
        when=lambda i: i.created_date,
        text=lambda i: " ".join([i.subject or "", i.note_text or ""]),
        now=now,
    )
