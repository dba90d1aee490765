# outreach/bloomerang/interests.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.giving import Designation, fetch_transactions, summarize_transactions
from outreach.bloomerang.paging import PageWalk

log = logging.getLogger(__name__)

TOP_INTERESTS = 5
OTHER_FUND = "Other"


@dataclass
class GivingInterest:
    fund: Optional[str]
    campaign: Optional[str]
    appeal: Optional[str]
    total_amount: Decimal = Decimal("0")
    gift_count: int = 0
    first_gift_date: Optional[date] = None
    last_gift_date: Optional[date] = None

    def label(self) -> str:
        parts = [p for p in (self.fund, self.campaign, self.appeal) if p and p.strip()]
        return " → ".join(parts) or "General giving"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fund": self.fund,
            "campaign": self.campaign,
            "appeal": self.appeal,
            "totalAmount": float(self.total_amount),
            "giftCount": self.gift_count,
            "firstGiftDate": self.first_gift_date.isoformat() if self.first_gift_date else None,
            "lastGiftDate": self.last_gift_date.isoformat() if self.last_gift_date else None,
        }


@dataclass
class InterestsResult:
    ok: bool
    interests: List[GivingInterest] = field(default_factory=list)
    request_urls: List[str] = field(default_factory=list)
    designation_count: int = 0
    failure: Optional[PageWalk] = None


def _earliest(a: Optional[date], b: Optional[date]) -> Optional[date]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _latest(a: Optional[date], b: Optional[date]) -> Optional[date]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _rank_key(interest: GivingInterest) -> Tuple[Decimal, date]:
    # undated groups sort as if dated at the epoch, i.e. after dated ties
    return interest.total_amount, interest.last_gift_date or date(1970, 1, 1)


def aggregate_giving_interests(designations: Iterable[Designation]) -> List[GivingInterest]:
    """
    Group by (fund, campaign, appeal) with missing parts as "", rank by total
    then latest gift (both descending), and fold everything past the top 5
    into a single trailing "Other" entry.
    """
    grouped: Dict[Tuple[str, str, str], GivingInterest] = {}

    for d in designations:
        key = (d.fund_name or "", d.campaign_name or "", d.appeal_name or "")
        interest = grouped.get(key)
        if interest is None:
            interest = GivingInterest(d.fund_name, d.campaign_name, d.appeal_name)
            grouped[key] = interest

        interest.total_amount += d.amount
        interest.gift_count += 1

        day = d.date.date() if isinstance(d.date, datetime) else None
        if day:
            interest.first_gift_date = _earliest(interest.first_gift_date, day)
            interest.last_gift_date = _latest(interest.last_gift_date, day)

    ranked = sorted(grouped.values(), key=_rank_key, reverse=True)
    if len(ranked) <= TOP_INTERESTS:
        return ranked

    top, rest = ranked[:TOP_INTERESTS], ranked[TOP_INTERESTS:]
    other = GivingInterest(OTHER_FUND, None, None)
    for interest in rest:
        other.total_amount += interest.total_amount
        other.gift_count += interest.gift_count
        other.first_gift_date = _earliest(other.first_gift_date, interest.first_gift_date)
        other.last_gift_date = _latest(other.last_gift_date, interest.last_gift_date)
    return top + [other]


async def build_household_giving_interests(client: BloomerangClient, member_ids: List[int]) -> InterestsResult:
    designations: List[Designation] = []
    request_urls: List[str] = []

    for member_id in member_ids:
        walk = await fetch_transactions(client, member_id)
        request_urls.extend(walk.request_urls)
        if not walk.ok:
            log.error(
                "[giving] interests transactions fetch failed member=%s status=%s url=%s",
                member_id, walk.failure.status if walk.failure else None, walk.failure.url if walk.failure else None,
            )
            return InterestsResult(ok=False, request_urls=request_urls, failure=walk)
        designations.extend(summarize_transactions(walk.items).designations)

    interests = aggregate_giving_interests(designations)
    log.info(
        "[giving] derived interests members=%s interests=%s designations=%s",
        len(member_ids), len(interests), len(designations),
    )
    return InterestsResult(ok=True, interests=interests, request_urls=request_urls, designation_count=len(designations))
