# outreach/bloomerang/paging.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from outreach.bloomerang.client import BloomerangClient, FetchResult

log = logging.getLogger(__name__)

DEFAULT_TAKE = 50

# ---------------------------
# Envelope shapes
# ---------------------------
# The CRM wraps list payloads inconsistently. Each strategy returns the item
# list it recognizes (possibly empty); extract_items takes the first non-empty.

LIST_KEYS = ("Results", "results", "Transactions", "transactions", "Items", "items")
WRAPPER_KEYS = ("Data", "data")


def _dicts(value: List[Any]) -> List[Dict[str, Any]]:
    return [v for v in value if isinstance(v, dict)]


def _top_level_list(payload: Any) -> List[Dict[str, Any]]:
    return _dicts(payload) if isinstance(payload, list) else []


def _named_list(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    for key in LIST_KEYS:
        nested = payload.get(key)
        if isinstance(nested, list):
            items = _dicts(nested)
            if items:
                return items
    return []


def _data_wrapper(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    for key in WRAPPER_KEYS:
        inner = payload.get(key)
        if isinstance(inner, (dict, list)):
            items = _top_level_list(inner) or _named_list(inner)
            if items:
                return items
    return []


ENVELOPE_STRATEGIES: List[Callable[[Any], List[Dict[str, Any]]]] = [
    _top_level_list,
    _named_list,
    _data_wrapper,
]


def extract_items(payload: Any) -> List[Dict[str, Any]]:
    for strategy in ENVELOPE_STRATEGIES:
        items = strategy(payload)
        if items:
            return items
    return []


# ---------------------------
# Offset/limit walker
# ---------------------------

@dataclass
class PageWalk:
    ok: bool
    items: List[Dict[str, Any]] = field(default_factory=list)
    request_urls: List[str] = field(default_factory=list)
    failure: Optional[FetchResult] = None

    def failure_detail(self) -> Dict[str, Any]:
        detail = self.failure.failure_detail() if self.failure else {"ok": False}
        detail["requestUrls"] = list(self.request_urls)
        return detail


async def walk_pages(
    client: BloomerangClient,
    path: str,
    params: Optional[Dict[str, Any]] = None,
    *,
    take: int = DEFAULT_TAKE,
) -> PageWalk:
    """
    Sequentially page through `path` with skip/take until a short page.
    Any failed page aborts the walk: items are dropped, URLs are kept.
    """
    items: List[Dict[str, Any]] = []
    request_urls: List[str] = []
    skip = 0

    while True:
        page_params = {**(params or {}), "skip": skip, "take": take}
        result = await client.get_json(path, page_params)
        request_urls.append(result.url)

        if not result.ok:
            log.warning(
                "[paging] %s failed at skip=%s status=%s after %s pages",
                path, skip, result.status, len(request_urls),
            )
            return PageWalk(ok=False, request_urls=request_urls, failure=result)

        page = extract_items(result.data)
        items.extend(page)

        if len(page) < take:
            break
        skip += take

    log.debug("[paging] %s pages=%s items=%s", path, len(request_urls), len(items))
    return PageWalk(ok=True, items=items, request_urls=request_urls)
