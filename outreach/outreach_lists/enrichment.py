# outreach/outreach_lists/enrichment.py
from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import anyio

from outreach.bloomerang.client import BloomerangClient, FetchStats
from outreach.bloomerang.giving import StatsResult, calculate_giving_stats, combine_household_totals
from outreach.bloomerang.households import (
    MEMBER_ID_PATHS,
    HouseholdDetail,
    SearchHit,
    build_household_snapshot,
    build_member_snapshot,
    fetch_household_details_with_retry,
    hydrate_constituents,
    parse_search_candidate,
    placeholder_member_snapshot,
    search_constituent,
)
from outreach.bloomerang.interests import aggregate_giving_interests
from outreach.config import clamp_concurrency
from outreach.outreach_lists.store import OutreachStore, Row
from outreach.utils.common import iso_or_none, pick_int, pick_string, utc_now
from outreach.utils.concurrency import map_with_concurrency

log = logging.getLogger(__name__)

# ---------------------------
# Tunables
# ---------------------------
HOUSEHOLD_FETCH_CONCURRENCY = 3
HYDRATE_CONCURRENCY_CAP = 5
MEMBER_STATS_CONCURRENCY = 3

IMPORT_ROWS = "outreach_list_import_rows"
ACCOUNT_MAP = "account_number_map"
HOUSEHOLDS = "outreach_list_households"
MEMBERS = "outreach_list_members"

FALLBACK_SOURCE = "fallback-no-household-fetch"


def household_key_for(household_id: Optional[int], constituent_id: Optional[int]) -> str:
    return f"h:{household_id}" if household_id is not None else f"c:{constituent_id}"


@dataclass
class HouseholdGroup:
    household_key: str
    household_id: Optional[int]
    solo_constituent_id: Optional[int]
    snapshot: Dict[str, Any]
    result_type: Optional[str] = None
    # insertion-ordered set: every member id any source has reported
    member_ids: Dict[int, None] = field(default_factory=dict)
    members: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    detail_fetched: bool = False

    @property
    def is_real(self) -> bool:
        return self.household_id is not None

    def add_member_ids(self, ids: Iterable[int]) -> None:
        for i in ids:
            if i:
                self.member_ids.setdefault(int(i), None)

    def final_member_ids(self) -> List[int]:
        if not self.is_real:
            return [self.solo_constituent_id] if self.solo_constituent_id else []
        ids = dict(self.member_ids)
        for mid in self.members:
            ids.setdefault(mid, None)
        return list(ids)


@dataclass
class EnrichmentContext:
    """
    Per-run caches, passed in explicitly so each request (or test) owns its state.
    Reusing one context across runs skips searches already resolved.
    """
    account_hits: Dict[str, SearchHit] = field(default_factory=dict)
    household_snapshots: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    profiles: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    member_account_numbers: Dict[int, str] = field(default_factory=dict)


@dataclass
class EnhanceResult:
    enhanced_households: int = 0
    enhanced_members: int = 0
    not_found: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    debug: Dict[str, Any] = field(default_factory=lambda: {"steps": [], "counts": {}, "sample": {}})

    def step(self, name: str) -> None:
        self.debug["steps"].append(name)

    def count(self, name: str, value: Any) -> None:
        self.debug["counts"][name] = value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "enhancedHouseholds": self.enhanced_households,
            "enhancedMembers": self.enhanced_members,
            "notFound": self.not_found,
            "errors": self.errors,
            "debug": self.debug,
        }


async def run_store(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    # store calls block (psycopg2); keep them off the event loop
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))


# ---------------------------
# Search + grouping
# ---------------------------

async def resolve_account(
    client: BloomerangClient, account_number: str, context: EnrichmentContext
) -> Tuple[Optional[SearchHit], bool, Optional[str]]:
    """(hit, searched, error) for one account number. A cached hit skips the search."""
    cached = context.account_hits.get(account_number)
    if cached is not None:
        return cached, False, None

    result, hit = await search_constituent(client, account_number)
    if not result.ok:
        return None, True, (
            f"Search failed for {account_number}: "
            f"{result.error or result.body_preview or result.status}"
        )
    if hit is not None:
        context.account_hits[account_number] = hit
    return hit, True, None


def assign_to_group(
    groups: Dict[str, HouseholdGroup],
    hit: SearchHit,
    account_number: str,
    context: EnrichmentContext,
) -> HouseholdGroup:
    """Merge one search hit into its household group, creating the group on first sight."""
    key = household_key_for(hit.household_id, hit.constituent_id)
    group = groups.get(key)
    if group is None:
        group = HouseholdGroup(
            household_key=key,
            household_id=hit.household_id,
            solo_constituent_id=None if hit.household_id is not None else hit.constituent_id,
            snapshot=build_household_snapshot(hit.raw, hit.household_id, "bloomerang-search"),
            result_type=hit.result_type,
        )
        groups[key] = group

    group.add_member_ids(hit.member_ids)
    if hit.constituent_id:
        group.add_member_ids([hit.constituent_id])
        group.members[hit.constituent_id] = build_member_snapshot(hit.raw, key)
        context.member_account_numbers[hit.constituent_id] = account_number
    return group


def apply_household_detail(group: HouseholdGroup, detail: HouseholdDetail, context: EnrichmentContext) -> None:
    """
    Fold a household detail response into the group. Member ids are only ever
    added. A failed fetch keeps what search knew and defers the first known id.
    """
    if not detail.ok:
        fallback = next(iter(group.member_ids), None)
        if fallback and fallback not in group.members:
            group.members[fallback] = placeholder_member_snapshot(fallback, group.household_key, source=FALLBACK_SOURCE)
        return

    group.detail_fetched = True
    group.add_member_ids(detail.member_ids)
    group.snapshot = {
        **group.snapshot,
        **build_household_snapshot(detail.household, group.household_id, "bloomerang-household"),
    }
    for raw in detail.members:
        mid = pick_int(raw, MEMBER_ID_PATHS)
        if mid:
            group.add_member_ids([mid])
            group.members[mid] = build_member_snapshot(raw, group.household_key, source="bloomerang-household")
    if group.household_id is not None:
        context.household_snapshots[group.household_id] = group.snapshot


def fold_solo_groups(groups: Dict[str, HouseholdGroup]) -> List[str]:
    """
    Drop solo groups whose constituent turned out to be a member of a real
    household, carrying the solo search snapshot over. Returns the dropped keys.
    """
    owner: Dict[int, HouseholdGroup] = {}
    for group in groups.values():
        if group.is_real:
            for mid in group.final_member_ids():
                owner.setdefault(mid, group)

    folded = []
    for key, group in list(groups.items()):
        if group.is_real:
            continue
        target = owner.get(group.solo_constituent_id)
        if target is None:
            continue
        cid = group.solo_constituent_id
        snapshot = group.members.get(cid)
        if snapshot is not None and needs_profile(target.members.get(cid)):
            target.members[cid] = {**snapshot, "householdKey": target.household_key}
        del groups[key]
        folded.append(key)
    return folded


def needs_profile(snapshot: Optional[Dict[str, Any]]) -> bool:
    snapshot = snapshot or {}
    name = pick_string(snapshot, ("displayName",))
    if not name or name.startswith("Constituent"):
        return True
    return not pick_string(snapshot, ("email",)) or not pick_string(snapshot, ("phone",))


def _account_map_row(account_number: str, hit: SearchHit) -> Row:
    return {
        "account_number": account_number,
        "constituent_id": hit.constituent_id,
        "raw": hit.raw,
        "match_confidence": "exact",
    }


# ---------------------------
# Pipeline
# ---------------------------

async def enhance_outreach_list(
    list_id: str,
    store: OutreachStore,
    client: BloomerangClient,
    *,
    concurrency: Optional[int] = None,
    context: Optional[EnrichmentContext] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> EnhanceResult:
    """
    Resolve every imported account number to a household and cache the
    households and members for the list. Safe to re-run: rows are upserted on
    (list, household_key) and (list, constituent_id) and never deleted.
    """
    concurrency = clamp_concurrency(concurrency)
    context = context or EnrichmentContext()
    result = EnhanceResult()
    started = time.monotonic()

    result.step("load-import-rows")
    rows = await run_store(store.select, IMPORT_ROWS, {"outreach_list_id": list_id}, order_by="row_number")
    account_numbers = list(dict.fromkeys(
        str(r.get("account_number") or "").strip() for r in rows if str(r.get("account_number") or "").strip()
    ))
    result.count("importRows", len(rows))
    if not account_numbers:
        result.step("done")
        return result

    result.step("map-account-numbers")
    mapped = await run_store(store.select, ACCOUNT_MAP, {"account_number": account_numbers})
    for m in mapped:
        if not m.get("constituent_id") or m["account_number"] in context.account_hits:
            continue
        hit = parse_search_candidate(m.get("raw"))
        if hit is not None:
            context.account_hits[m["account_number"]] = hit

    result.step("bloomerang-search")
    resolved = await map_with_concurrency(
        account_numbers, concurrency, lambda acct: resolve_account(client, acct, context)
    )

    groups: Dict[str, HouseholdGroup] = {}
    new_map_rows: List[Row] = []
    searched = 0
    for account_number, outcome in zip(account_numbers, resolved):
        if isinstance(outcome, BaseException):
            result.not_found.append(account_number)
            result.errors.append(f"Search failed for {account_number}: {outcome}")
            continue
        hit, did_search, error = outcome
        searched += int(did_search)
        if error:
            result.errors.append(error)
        if hit is None:
            log.info("[enhance] search miss list=%s account=%s", list_id, account_number)
            result.not_found.append(account_number)
            continue
        group = assign_to_group(groups, hit, account_number, context)
        if did_search and hit.constituent_id:
            new_map_rows.append(_account_map_row(account_number, hit))
        if "firstKey" not in result.debug["sample"]:
            result.debug["sample"].update(
                firstConstituentId=hit.constituent_id,
                firstHouseholdId=hit.household_id,
                firstKey=group.household_key,
            )

    real = [g for g in groups.values() if g.is_real]
    result.count("searched", searched)
    result.count("realHouseholds", len(real))
    result.count("soloHouseholds", len(groups) - len(real))

    if real:
        result.step("fetch-households")
        fetch_stats = FetchStats()
        details = await map_with_concurrency(
            real,
            HOUSEHOLD_FETCH_CONCURRENCY,
            lambda g: fetch_household_details_with_retry(client, g.household_id, stats=fetch_stats, sleep=sleep),
        )
        failed = 0
        for group, detail in zip(real, details):
            if isinstance(detail, BaseException):
                detail = HouseholdDetail(ok=False, household_id=group.household_id)
            if not detail.ok:
                failed += 1
                status = detail.result.status if detail.result else None
                result.errors.append(f"Household {group.household_id} fetch failed (status {status}).")
            apply_household_detail(group, detail, context)
        result.count("householdFetchAttempted", len(real))
        result.count("householdFetchFailed", failed)
        result.debug["householdFetch"] = {
            "statusCounts": fetch_stats.status_counts,
            "sampleFailures": fetch_stats.sample_failures,
        }

    folded = fold_solo_groups(groups)
    if folded:
        log.info("[enhance] list=%s folded solo groups into households: %s", list_id, folded)
    result.count("soloFolded", len(folded))

    result.step("enrich-member-profiles")
    wanted: List[int] = []
    for group in groups.values():
        for mid in group.final_member_ids():
            if mid in context.profiles:
                continue
            if needs_profile(group.members.get(mid)):
                wanted.append(mid)
    hydration = await hydrate_constituents(
        client, wanted, concurrency=min(concurrency, HYDRATE_CONCURRENCY_CAP)
    )
    context.profiles.update(hydration.profiles)
    result.errors.extend(hydration.errors)
    result.count("profilesRequested", len(set(wanted)))
    result.count("profilesMissing", len(hydration.failed_ids))

    for group in groups.values():
        for mid in group.final_member_ids():
            profile = context.profiles.get(mid)
            if profile is not None and needs_profile(group.members.get(mid)):
                group.members[mid] = build_member_snapshot(profile, group.household_key, source="bloomerang-constituent")
            elif mid not in group.members:
                group.members[mid] = placeholder_member_snapshot(mid, group.household_key)

    if not groups:
        result.step("done")
        return result

    result.step("upsert-households")
    household_rows = [
        {
            "outreach_list_id": list_id,
            "household_key": g.household_key,
            "household_id": g.household_id,
            "solo_constituent_id": g.solo_constituent_id,
            "origin": "import",
            "household_snapshot": {**g.snapshot, "memberCount": len(g.final_member_ids())},
        }
        for g in groups.values()
    ]
    saved = await run_store(store.upsert, HOUSEHOLDS, household_rows, ("outreach_list_id", "household_key"))
    row_ids = {r["household_key"]: r["id"] for r in saved}

    result.step("upsert-members")
    member_rows: Dict[int, Row] = {}
    # real households first so a member seen in both keeps the real household
    for group in sorted(groups.values(), key=lambda g: not g.is_real):
        list_household_id = row_ids.get(group.household_key)
        if list_household_id is None:
            result.errors.append(f"Missing household mapping for key {group.household_key}")
            continue
        for mid in group.final_member_ids():
            if mid in member_rows:
                continue
            snapshot = dict(group.members[mid])
            account_number = context.member_account_numbers.get(mid)
            if account_number:
                snapshot["accountNumber"] = account_number
            member_rows[mid] = {
                "outreach_list_id": list_id,
                "outreach_list_household_id": list_household_id,
                "household_id": group.household_id,
                "constituent_id": mid,
                "origin": "import",
                "member_snapshot": snapshot,
            }
    if member_rows:
        await run_store(store.upsert, MEMBERS, list(member_rows.values()), ("outreach_list_id", "constituent_id"))

    if new_map_rows:
        await run_store(store.upsert, ACCOUNT_MAP, new_map_rows, ("account_number",))

    result.enhanced_households = len(groups)
    result.enhanced_members = len(member_rows)
    result.count("membersPrepared", len(member_rows))
    result.count("avgMembersPerHousehold", round(len(member_rows) / len(groups), 2))
    result.step("done")
    log.info(
        "[enhance] list=%s households=%s members=%s not_found=%s errors=%s in %.2fs",
        list_id, result.enhanced_households, result.enhanced_members,
        len(result.not_found), len(result.errors), time.monotonic() - started,
    )
    return result


# ---------------------------
# Giving enrichment
# ---------------------------

@dataclass
class GivingEnrichmentResult:
    households: int = 0
    with_stats: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "households": self.households,
            "withStats": self.with_stats,
            "failed": self.failed,
        }


def build_giving_snapshot(results: List[StatsResult], computed_at: datetime) -> Dict[str, Any]:
    """
    Household giving snapshot from per-member results. Any failed member walk
    means the household gets no stats at all, never partial or zero stats.
    """
    failures = [r for r in results if not r.ok]
    if failures:
        return {
            "ok": False,
            "computedAt": iso_or_none(computed_at),
            "error": failures[0].error or "Unable to load transactions.",
            "requestUrls": [u for r in failures for u in r.request_urls],
        }

    totals = combine_household_totals(r.stats for r in results)
    interests = aggregate_giving_interests(d for r in results for d in r.designations)
    return {
        "ok": True,
        "computedAt": iso_or_none(computed_at),
        "totals": totals.as_dict(),
        "members": {str(r.constituent_id): r.stats.as_dict() for r in results if r.stats},
        "interests": [i.as_dict() for i in interests],
    }


async def enrich_list_giving(
    list_id: str,
    store: OutreachStore,
    client: BloomerangClient,
    *,
    now: Optional[datetime] = None,
) -> GivingEnrichmentResult:
    now = now or utc_now()
    out = GivingEnrichmentResult()

    households = await run_store(store.select, HOUSEHOLDS, {"outreach_list_id": list_id}, order_by="household_key")
    members = await run_store(store.select, MEMBERS, {"outreach_list_id": list_id})
    by_household: Dict[str, List[int]] = {}
    for m in members:
        by_household.setdefault(m["outreach_list_household_id"], []).append(int(m["constituent_id"]))

    updates: List[Row] = []
    for household in households:
        member_ids = sorted(set(by_household.get(household["id"], [])))
        if not member_ids:
            continue
        results = await map_with_concurrency(
            member_ids, MEMBER_STATS_CONCURRENCY, lambda cid: calculate_giving_stats(client, cid, now=now)
        )
        stats = [
            r if not isinstance(r, BaseException) else StatsResult(ok=False, constituent_id=cid)
            for cid, r in zip(member_ids, results)
        ]
        snapshot = build_giving_snapshot(stats, now)
        if snapshot["ok"]:
            out.with_stats += 1
        else:
            out.failed.append({"householdKey": household["household_key"], "error": snapshot["error"]})
        updates.append({
            "outreach_list_id": list_id,
            "household_key": household["household_key"],
            "giving_snapshot": snapshot,
        })

    if updates:
        await run_store(store.upsert, HOUSEHOLDS, updates, ("outreach_list_id", "household_key"))
    out.households = len(updates)
    log.info(
        "[giving] list=%s households=%s with_stats=%s failed=%s",
        list_id, out.households, out.with_stats, len(out.failed),
    )
    return out
