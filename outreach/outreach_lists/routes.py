# outreach/outreach_lists/routes.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.routes import get_bloomerang_client
from outreach.models import HOUSEHOLD_STATUSES, EnhanceInput, HouseholdStatusInput, ImportListInput
from outreach.outreach_lists.enrichment import (
    HOUSEHOLDS,
    IMPORT_ROWS,
    MEMBERS,
    enhance_outreach_list,
    enrich_list_giving,
    run_store,
)
from outreach.outreach_lists.store import OutreachStore, StoreError
from outreach.utils.common import utc_now

log = logging.getLogger(__name__)

router = APIRouter(prefix="/outreach-lists", tags=["Outreach Lists"])

LISTS = "outreach_lists"


def get_store(request: Request) -> OutreachStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(500, "Store not configured on app.state.store")
    return store


async def _get_list_or_404(store: OutreachStore, list_id: str) -> Dict[str, Any]:
    rows = await run_store(store.select, LISTS, {"id": list_id})
    if not rows:
        raise HTTPException(status_code=404, detail=f"Outreach list {list_id} not found")
    return rows[0]


async def _get_household_or_404(store: OutreachStore, list_id: str, household_key: str) -> Dict[str, Any]:
    rows = await run_store(store.select, HOUSEHOLDS, {"outreach_list_id": list_id, "household_key": household_key})
    if not rows:
        raise HTTPException(status_code=404, detail=f"Household {household_key} not found on list {list_id}")
    return rows[0]


def _member_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "constituentId": row.get("constituent_id"),
        "householdId": row.get("household_id"),
        "snapshot": row.get("member_snapshot") or {},
    }


def _household_view(row: Dict[str, Any], members: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "householdKey": row.get("household_key"),
        "householdId": row.get("household_id"),
        "soloConstituentId": row.get("solo_constituent_id"),
        "status": row.get("outreach_status") or "not_started",
        "snapshot": row.get("household_snapshot") or {},
        "giving": row.get("giving_snapshot"),
        "members": [_member_view(m) for m in members],
    }


@router.post("/import", response_model=dict)
async def import_outreach_list(payload: ImportListInput, store: OutreachStore = Depends(get_store)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required.")
    account_numbers = [a.strip() for a in payload.account_numbers if a and a.strip()]
    if not account_numbers:
        raise HTTPException(status_code=400, detail="account_numbers must contain at least one value.")

    list_id = str(uuid.uuid4())
    try:
        await run_store(store.upsert, LISTS, [{
            "id": list_id,
            "name": name,
            "description": payload.description,
            "created_at": utc_now(),
        }], ("id",))
        await run_store(store.upsert, IMPORT_ROWS, [
            {"outreach_list_id": list_id, "row_number": i, "account_number": acct}
            for i, acct in enumerate(account_numbers, start=1)
        ], ("outreach_list_id", "row_number"))
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

    log.info("[outreach] imported list=%s rows=%s", list_id, len(account_numbers))
    return {"ok": True, "id": list_id, "name": name, "rows": len(account_numbers)}


@router.post("/{list_id}/archive", response_model=dict)
async def archive_outreach_list(list_id: str, store: OutreachStore = Depends(get_store)):
    outreach_list = await _get_list_or_404(store, list_id)
    archived_at = utc_now()
    await run_store(store.upsert, LISTS, [{
        "id": list_id,
        "name": outreach_list["name"],
        "archived_at": archived_at,
    }], ("id",))
    return {"ok": True, "id": list_id, "archivedAt": archived_at.isoformat()}


@router.post("/{list_id}/enhance", response_model=dict)
async def api_enhance_outreach_list(
    list_id: str,
    payload: EnhanceInput = EnhanceInput(),
    store: OutreachStore = Depends(get_store),
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    await _get_list_or_404(store, list_id)
    try:
        result = await enhance_outreach_list(list_id, store, client, concurrency=payload.concurrency)
    except StoreError as e:
        raise HTTPException(status_code=500, detail={"ok": False, "error": str(e)})
    return result.as_dict()


@router.post("/{list_id}/enrich/giving", response_model=dict)
async def api_enrich_list_giving(
    list_id: str,
    store: OutreachStore = Depends(get_store),
    client: BloomerangClient = Depends(get_bloomerang_client),
):
    await _get_list_or_404(store, list_id)
    try:
        result = await enrich_list_giving(list_id, store, client)
    except StoreError as e:
        raise HTTPException(status_code=500, detail={"ok": False, "error": str(e)})
    return result.as_dict()


@router.get("/{list_id}/households", response_model=dict)
async def list_households(list_id: str, store: OutreachStore = Depends(get_store)):
    outreach_list = await _get_list_or_404(store, list_id)
    households = await run_store(store.select, HOUSEHOLDS, {"outreach_list_id": list_id}, order_by="household_key")
    members = await run_store(store.select, MEMBERS, {"outreach_list_id": list_id}, order_by="constituent_id")

    by_household: Dict[str, List[Dict[str, Any]]] = {}
    for m in members:
        by_household.setdefault(m["outreach_list_household_id"], []).append(m)

    return {
        "ok": True,
        "list": {
            "id": outreach_list["id"],
            "name": outreach_list.get("name"),
            "description": outreach_list.get("description"),
            "archivedAt": outreach_list["archived_at"].isoformat() if outreach_list.get("archived_at") else None,
        },
        "households": [_household_view(h, by_household.get(h["id"], [])) for h in households],
    }


@router.get("/{list_id}/households/{household_key}", response_model=dict)
async def get_household(list_id: str, household_key: str, store: OutreachStore = Depends(get_store)):
    household = await _get_household_or_404(store, list_id, household_key)
    members = await run_store(
        store.select, MEMBERS,
        {"outreach_list_id": list_id, "outreach_list_household_id": household["id"]},
        order_by="constituent_id",
    )
    return {"ok": True, "household": _household_view(household, members)}


@router.post("/{list_id}/households/{household_key}/status", response_model=dict)
async def set_household_status(
    list_id: str,
    household_key: str,
    payload: HouseholdStatusInput,
    store: OutreachStore = Depends(get_store),
):
    status = payload.status.strip().lower()
    if status not in HOUSEHOLD_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(HOUSEHOLD_STATUSES)}")

    await _get_household_or_404(store, list_id, household_key)
    await run_store(store.upsert, HOUSEHOLDS, [{
        "outreach_list_id": list_id,
        "household_key": household_key,
        "outreach_status": status,
    }], ("outreach_list_id", "household_key"))
    return {"ok": True, "householdKey": household_key, "status": status}
