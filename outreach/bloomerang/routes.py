# outreach/bloomerang/routes.py
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.giving import StatsResult, calculate_giving_stats, combine_household_totals, recent_transactions
from outreach.bloomerang.households import fetch_household_details, hydrate_constituents, search_constituent
from outreach.bloomerang.interests import build_household_giving_interests
from outreach.bloomerang.notes import build_activity_meta, fetch_household_notes
from outreach.bloomerang.summary import (
    SummaryCache,
    SummaryError,
    build_activity_summary,
    build_notes_summary,
    summarize_with_openai,
)
from outreach.config import BloomerangConfigError, settings
from outreach.models import ActivitySummaryInput, HouseholdNotesInput, SearchInput
from outreach.utils.concurrency import map_with_concurrency

log = logging.getLogger(__name__)

router = APIRouter(prefix="/bloomerang", tags=["Bloomerang"])

MEMBER_STATS_CONCURRENCY = 3
SEARCH_PASSTHROUGH_TAKE = 10


async def get_bloomerang_client() -> AsyncIterator[BloomerangClient]:
    """Request-scoped client; a missing API key is a 500 before any network call."""
    try:
        client = BloomerangClient()
    except BloomerangConfigError as e:
        raise HTTPException(status_code=500, detail={"ok": False, "error": str(e)})
    async with client:
        yield client


def _summary_cache(request: Request) -> SummaryCache:
    cache = getattr(request.app.state, "summary_cache", None)
    if cache is None:
        cache = SummaryCache(ttl_seconds=settings.SUMMARY_CACHE_TTL_SECONDS)
        request.app.state.summary_cache = cache
    return cache


def _stats_payload(result: StatsResult) -> Dict[str, Any]:
    return {
        "ok": True,
        "constituentId": result.constituent_id,
        "stats": result.stats.as_dict(),
        "recentTransactions": recent_transactions(result.transactions),
        "debug": {
            "transactionCount": result.transaction_count,
            "includedCount": result.included_count,
            "requestUrls": result.request_urls,
        },
    }


@router.get("/giving-stats", response_model=dict)
async def api_giving_stats(
    constituent_id: int = Query(..., alias="constituentId"),
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    result = await calculate_giving_stats(client, constituent_id)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.walk.failure_detail())
    return _stats_payload(result)


@router.get("/giving-interests", response_model=dict)
async def api_giving_interests(
    member_ids: str = Query(..., alias="memberIds", description="Comma or pipe separated constituent ids"),
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    ids = _parse_ids(member_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="memberIds must contain at least one numeric id.")

    result = await build_household_giving_interests(client, ids)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.failure.failure_detail())
    return {
        "ok": True,
        "givingInterests": [i.as_dict() for i in result.interests],
        "debug": {"designationCount": result.designation_count, "requestUrls": result.request_urls},
    }


@router.post("/search-with-household-and-stats", response_model=dict)
async def api_search_with_household_and_stats(
    payload: SearchInput,
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    account_number = payload.accountNumber.strip()
    if not account_number:
        raise HTTPException(status_code=400, detail="accountNumber is required.")

    search, hit = await search_constituent(client, account_number)
    if not search.ok:
        raise HTTPException(status_code=502, detail=search.failure_detail())
    if hit is None:
        raise HTTPException(status_code=404, detail={"ok": False, "error": "No constituent found", "url": search.url})

    household = None
    household_error = None
    member_ids: List[int] = list(hit.member_ids)
    if hit.household_id and hit.is_in_household is not False:
        detail = await fetch_household_details(client, hit.household_id)
        if detail.ok:
            household = detail.household
            member_ids = list(dict.fromkeys(member_ids + detail.member_ids))
        else:
            household_error = detail.result.error or detail.result.body_preview or "Unable to load household data."
    if not member_ids and hit.constituent_id:
        member_ids = [hit.constituent_id]

    known = {hit.constituent_id: hit.raw} if hit.constituent_id else {}
    hydration = await hydrate_constituents(client, [i for i in member_ids if i not in known])
    profiles = {**hydration.profiles, **known}

    stats = await map_with_concurrency(
        member_ids, MEMBER_STATS_CONCURRENCY, lambda cid: calculate_giving_stats(client, cid)
    )

    members = []
    for cid, result in zip(member_ids, stats):
        member: Dict[str, Any] = {"constituent": profiles.get(cid), "constituentId": cid}
        if cid not in profiles:
            member["constituentError"] = "Unable to load constituent."
        if isinstance(result, BaseException):
            member["statsError"] = str(result)
        elif result.ok:
            member["stats"] = result.stats.as_dict()
            member["recentTransactions"] = recent_transactions(result.transactions)
        else:
            member["statsError"] = result.error
        members.append(member)

    # one failed member walk voids the household aggregate; never report a partial sum
    failed = [(cid, r) for cid, r in zip(member_ids, stats) if isinstance(r, BaseException) or not r.ok]
    totals = None
    totals_error = None
    if failed:
        totals_error = {
            "ok": False,
            "error": "; ".join(
                f"{cid}: {r if isinstance(r, BaseException) else r.error}" for cid, r in failed
            ),
            "requestUrls": [u for _, r in failed if not isinstance(r, BaseException) for u in r.request_urls],
        }
    else:
        totals = combine_household_totals(r.stats for r in stats).as_dict()
    return {
        "ok": True,
        "constituent": hit.raw,
        "household": household,
        "householdError": household_error,
        "members": members,
        "householdTotals": totals,
        "householdTotalsError": totals_error,
    }


@router.post("/household-activity-summary", response_model=dict)
async def api_household_activity_summary(
    payload: ActivitySummaryInput,
    request: Request,
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    member_ids = list(dict.fromkeys(payload.memberIds))
    if not member_ids:
        raise HTTPException(status_code=400, detail="memberIds must be a non-empty array of numbers.")
    goal = (payload.outreachGoal or "").strip() or None
    context = (payload.outreachContext or "").strip() or None

    summarizer = getattr(request.app.state, "summarizer", None) or summarize_with_openai
    cache = _summary_cache(request)
    key = cache.key_for(member_ids, goal, context)
    cached = cache.get(key)
    if cached is not None:
        return cached

    try:
        result = await build_activity_summary(client, member_ids, goal, context, summarizer=summarizer)
    except SummaryError as e:
        raise HTTPException(status_code=e.status, detail={"ok": False, "error": str(e)})

    if not result.get("ok"):
        raise HTTPException(status_code=502, detail=result)
    cache.set(key, result)
    return result


@router.get("/search", response_model=dict)
async def api_search(
    account_number: str = Query("", alias="accountNumber"),
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    """Raw constituent search passthrough, plus the ids parsed from the first hit."""
    account_number = account_number.strip()
    if not account_number:
        raise HTTPException(status_code=400, detail="accountNumber is required.")

    search, hit = await search_constituent(client, account_number, take=SEARCH_PASSTHROUGH_TAKE)
    if not search.ok:
        raise HTTPException(status_code=502, detail=search.failure_detail())
    first = None
    if hit is not None:
        first = {
            "type": hit.result_type,
            "constituentId": hit.constituent_id,
            "householdId": hit.household_id,
            "memberIds": hit.member_ids,
        }
    return {"ok": True, "url": search.url, "status": search.status, "data": search.data, "firstMatch": first}


@router.get("/household", response_model=dict)
async def api_household(
    household_id: int = Query(..., alias="householdId"),
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    detail = await fetch_household_details(client, household_id)
    if not detail.ok:
        if detail.result.status == 404:
            raise HTTPException(status_code=404, detail={"ok": False, "error": "Household not found", "url": detail.result.url})
        raise HTTPException(status_code=502, detail=detail.result.failure_detail())
    return {
        "ok": True,
        "url": detail.result.url,
        "household": detail.household,
        "memberIds": detail.member_ids,
    }


@router.post("/household-notes", response_model=dict)
async def api_household_notes(
    payload: HouseholdNotesInput,
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    member_ids = list(dict.fromkeys(payload.memberIds))
    if not member_ids:
        raise HTTPException(status_code=400, detail="memberIds must be a non-empty array of numbers.")

    walk, notes = await fetch_household_notes(client, member_ids)
    if not walk.ok:
        raise HTTPException(status_code=502, detail=walk.failure_detail())
    return {
        "ok": True,
        "notes": [n.as_dict() for n in notes],
        "notesMeta": {**build_activity_meta(n.created_date for n in notes), "usedCount": len(notes)},
    }


@router.post("/household-notes-summary", response_model=dict)
async def api_household_notes_summary(
    payload: HouseholdNotesInput,
    request: Request,
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    member_ids = list(dict.fromkeys(payload.memberIds))
    if not member_ids:
        raise HTTPException(status_code=400, detail="memberIds must be a non-empty array of numbers.")

    summarizer = getattr(request.app.state, "summarizer", None) or summarize_with_openai
    cache = _summary_cache(request)
    key = "notes::" + cache.key_for(member_ids, None, None)
    cached = cache.get(key)
    if cached is not None:
        return cached

    try:
        result = await build_notes_summary(client, member_ids, summarizer=summarizer)
    except SummaryError as e:
        raise HTTPException(status_code=e.status, detail={"ok": False, "error": str(e)})

    if not result.get("ok"):
        raise HTTPException(status_code=502, detail=result)
    cache.set(key, result)
    return result


def _parse_ids(raw: str) -> List[int]:
    out: List[int] = []
    for part in raw.replace("|", ",").split(","):
        part = part.strip()
        if part.isdigit():
            out.append(int(part))
    return list(dict.fromkeys(out))
