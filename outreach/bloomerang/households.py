# outreach/bloomerang/households.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from outreach.bloomerang.client import BloomerangClient, FetchResult, FetchStats
from outreach.bloomerang.paging import extract_items
from outreach.utils.common import int_ids, normalize_boolean, pick_int, pick_string, read_value
from outreach.utils.concurrency import map_with_concurrency

log = logging.getLogger(__name__)

SEARCH_PATH = "constituents/search"
CONSTITUENTS_PATH = "constituents"
HYDRATE_BATCH_SIZE = 25

ID_PATHS = ("id", "Id", "constituentId", "ConstituentId", "accountId", "AccountId")
MEMBER_ID_PATHS = ("Id", "id", "ConstituentId", "constituentId", "AccountId", "accountId")


@dataclass
class SearchHit:
    raw: Dict[str, Any]
    result_type: Optional[str]
    constituent_id: Optional[int]
    household_id: Optional[int]
    member_ids: List[int] = field(default_factory=list)
    is_in_household: Optional[bool] = None

    @property
    def is_household(self) -> bool:
        return self.result_type == "Household"


@dataclass
class HouseholdDetail:
    ok: bool
    household_id: int
    household: Dict[str, Any] = field(default_factory=dict)
    member_ids: List[int] = field(default_factory=list)
    members: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[FetchResult] = None


@dataclass
class HydrationResult:
    profiles: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    failed_ids: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# ---------------------------
# Search
# ---------------------------

def parse_search_candidate(candidate: Any) -> Optional[SearchHit]:
    """
    A search result is either a constituent (optional HouseholdId) or a
    household (its own Id is the household id, MemberIds embedded).
    """
    if not isinstance(candidate, dict):
        return None
    result_type = pick_string(candidate, ("Type", "type"))
    id_value = pick_int(candidate, ID_PATHS)

    if result_type == "Household":
        if not id_value:
            return None
        return SearchHit(
            raw=candidate,
            result_type=result_type,
            constituent_id=None,
            household_id=id_value,
            member_ids=int_ids(read_value(candidate, "MemberIds")),
        )

    if not id_value:
        return None
    household_id = pick_int(candidate, ("HouseholdId", "householdId"))
    return SearchHit(
        raw=candidate,
        result_type=result_type,
        constituent_id=id_value,
        household_id=household_id if household_id and household_id > 0 else None,
        is_in_household=normalize_boolean(read_value(candidate, "IsInHousehold")),
    )


async def search_constituent(client: BloomerangClient, account_number: str, *, take: int = 1) -> tuple[FetchResult, Optional[SearchHit]]:
    result = await client.get_json(SEARCH_PATH, {"skip": 0, "take": take, "search": account_number})
    if not result.ok:
        return result, None
    results = read_value(result.data, "Results") if isinstance(result.data, dict) else None
    first = results[0] if isinstance(results, list) and results else None
    return result, parse_search_candidate(first)


# ---------------------------
# Household detail
# ---------------------------

def _member_records(household: Dict[str, Any]) -> List[Dict[str, Any]]:
    for key in ("Members", "members"):
        value = household.get(key)
        if isinstance(value, list):
            return [m for m in value if isinstance(m, dict)]
        if isinstance(value, dict):
            return extract_items(value)
    return []


async def fetch_household_details(client: BloomerangClient, household_id: int) -> HouseholdDetail:
    result = await client.get_json(f"households/{household_id}")
    return parse_household_detail(household_id, result)


def parse_household_detail(household_id: int, result: FetchResult) -> HouseholdDetail:
    if not result.ok:
        return HouseholdDetail(ok=False, household_id=household_id, result=result)

    household = result.data if isinstance(result.data, dict) else {}
    member_ids = int_ids(household.get("MemberIds"))
    members = _member_records(household)
    for m in members:
        mid = pick_int(m, MEMBER_ID_PATHS)
        if mid and mid not in member_ids:
            member_ids.append(mid)
    return HouseholdDetail(
        ok=True,
        household_id=household_id,
        household=household,
        member_ids=member_ids,
        members=members,
        result=result,
    )


async def fetch_household_details_with_retry(
    client: BloomerangClient,
    household_id: int,
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    stats: Optional[FetchStats] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> HouseholdDetail:
    result = await client.get_json_with_retry(
        f"households/{household_id}",
        attempts=attempts,
        base_delay=base_delay,
        stats=stats,
        sleep=sleep,
    )
    return parse_household_detail(household_id, result)


# ---------------------------
# Constituent hydration
# ---------------------------

async def hydrate_constituents(
    client: BloomerangClient,
    constituent_ids: Sequence[int],
    *,
    batch_size: int = HYDRATE_BATCH_SIZE,
    concurrency: int = 5,
) -> HydrationResult:
    """
    Batch-load full constituent records (`/constituents?id=1|2|3`).
    Ids missing from every response land in failed_ids; nothing raises.
    """
    ids = list(dict.fromkeys(constituent_ids))
    batches = [ids[i:i + batch_size] for i in range(0, len(ids), batch_size)]

    async def load(batch: List[int]) -> FetchResult:
        return await client.get_json(
            CONSTITUENTS_PATH,
            {"id": "|".join(str(i) for i in batch), "skip": 0, "take": len(batch)},
        )

    out = HydrationResult()
    results = await map_with_concurrency(batches, concurrency, load)

    for batch, result in zip(batches, results):
        if isinstance(result, BaseException):
            out.errors.append(f"Constituent batch failed: {result}")
            continue
        if not result.ok:
            out.errors.append(
                f"Failed to load constituents {batch[0]}..{batch[-1]}: "
                f"{result.error or result.body_preview or result.status}"
            )
            continue
        for record in extract_items(result.data):
            cid = pick_int(record, MEMBER_ID_PATHS)
            if cid is not None:
                out.profiles[cid] = record

    out.failed_ids = [i for i in ids if i not in out.profiles]
    if out.failed_ids:
        log.warning("[households] hydration missing ids=%s (of %s)", len(out.failed_ids), len(ids))
    return out


# ---------------------------
# Snapshots
# ---------------------------

def member_display_name(constituent: Optional[Dict[str, Any]], fallback_id: Optional[int] = None) -> str:
    if constituent:
        for paths in (("FullName", "Name", "name"), ("InformalName", "informalName"), ("FormalName", "formalName")):
            name = pick_string(constituent, paths)
            if name:
                return name
        first = pick_string(constituent, ("FirstName", "firstName"))
        last = pick_string(constituent, ("LastName", "lastName"))
        if first and last:
            return f"{first} {last}"
        fallback_id = fallback_id or pick_int(constituent, MEMBER_ID_PATHS)
    return f"Constituent {fallback_id}" if fallback_id else "Constituent"


def communication_restrictions(constituent: Dict[str, Any]) -> List[str]:
    raw = read_value(constituent, "CommunicationRestrictions")
    if isinstance(raw, list):
        return [str(r) for r in raw if isinstance(r, str) and r.strip()]
    return []


def build_member_snapshot(constituent: Dict[str, Any], household_key: str, source: str = "bloomerang-search") -> Dict[str, Any]:
    return {
        "displayName": member_display_name(constituent),
        "email": pick_string(constituent, ("PrimaryEmail.Value", "Email", "PrimaryEmail", "email")),
        "phone": pick_string(constituent, ("PrimaryPhone.Number", "Phone", "PrimaryPhone", "phone")),
        "householdId": pick_int(constituent, ("HouseholdId", "householdId")),
        "communicationRestrictions": communication_restrictions(constituent),
        "emailInterestType": pick_string(constituent, ("EmailInterestType",)),
        "householdKey": household_key,
        "source": source,
    }


def placeholder_member_snapshot(constituent_id: int, household_key: str, source: str = "inferred-household-member") -> Dict[str, Any]:
    return {
        "displayName": member_display_name(None, constituent_id),
        "householdKey": household_key,
        "source": source,
    }


def build_household_snapshot(record: Dict[str, Any], household_id: Optional[int], source: str) -> Dict[str, Any]:
    name = pick_string(record, ("HouseholdName", "householdName", "Name", "FullName", "name"))
    return {
        "householdId": household_id,
        "displayName": name or "Household",
        "source": source,
    }
