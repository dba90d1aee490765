# outreach/bloomerang/giving.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.paging import DEFAULT_TAKE, PageWalk, walk_pages
from outreach.utils.common import (
    first_present,
    iso_or_none,
    normalize_boolean,
    parse_datetime,
    pick_number,
    pick_string,
    read_value,
    utc_now,
    year_bounds,
)

log = logging.getLogger(__name__)

# ---------------------------
# Tunables
# ---------------------------
INCLUDED_TYPES = frozenset({"Donation", "PledgePayment", "RecurringDonationPayment"})
TRANSACTIONS_PATH = "transactions"

AMOUNT_PATHS = ("Amount", "amount", "Amount.Value", "AmountValue", "amountValue", "Amount.amount", "Amount.Amount")
DESIGNATION_AMOUNT_PATHS = ("Amount", "amount", "AmountValue", "amountValue", "Amount.Amount")
TYPE_PATHS = ("Type", "type", "TransactionType", "transactionType")

Transaction = Dict[str, Any]


@dataclass
class Designation:
    fund_name: Optional[str]
    campaign_name: Optional[str]
    appeal_name: Optional[str]
    amount: Decimal
    date: Optional[datetime]


@dataclass
class GivingStats:
    lifetime_total: Decimal = Decimal("0")
    last_year_total: Decimal = Decimal("0")
    ytd_total: Decimal = Decimal("0")
    last_gift_amount: Optional[Decimal] = None
    last_gift_date: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lifetimeTotal": float(self.lifetime_total),
            "lastYearTotal": float(self.last_year_total),
            "ytdTotal": float(self.ytd_total),
            "lastGiftAmount": None if self.last_gift_amount is None else float(self.last_gift_amount),
            "lastGiftDate": iso_or_none(self.last_gift_date),
        }


@dataclass
class TransactionSummary:
    stats: GivingStats
    designations: List[Designation] = field(default_factory=list)
    transaction_count: int = 0
    included_count: int = 0


@dataclass
class StatsResult:
    ok: bool
    constituent_id: int
    stats: Optional[GivingStats] = None
    transactions: List[Transaction] = field(default_factory=list)
    designations: List[Designation] = field(default_factory=list)
    transaction_count: int = 0
    included_count: int = 0
    request_urls: List[str] = field(default_factory=list)
    walk: Optional[PageWalk] = None

    @property
    def error(self) -> Optional[str]:
        if self.ok or not self.walk or not self.walk.failure:
            return None
        f = self.walk.failure
        return f.error


# ---------------------------
# Normalization
# ---------------------------

def transaction_type(txn: Transaction) -> Optional[str]:
    value = pick_string(txn, TYPE_PATHS)
    if value:
        return value
    designations = read_value(txn, "Designations")
    if isinstance(designations, list) and designations and isinstance(designations[0], dict):
        return pick_string(designations[0], ("Type", "type"))
    return None


def is_refunded(txn: Transaction) -> bool:
    flag = first_present(txn, ("IsRefunded", "isRefunded"))
    refund_ids = first_present(txn, ("RefundIds", "refundIds"))

    if isinstance(flag, str) and flag.strip().lower() == "yes":
        return True
    if normalize_boolean(flag) is True:
        return True
    if isinstance(refund_ids, list) and len(refund_ids) > 0:
        return True
    return False


def should_include_transaction(txn: Transaction) -> bool:
    ttype = transaction_type(txn)
    if not ttype or ttype.strip() not in INCLUDED_TYPES:
        return False
    return not is_refunded(txn)


def transaction_amount(txn: Transaction) -> Decimal:
    amount = pick_number(txn, AMOUNT_PATHS)
    if amount is not None:
        return amount
    designations = read_value(txn, "Designations")
    if isinstance(designations, list) and designations and isinstance(designations[0], dict):
        d_amount = pick_number(designations[0], DESIGNATION_AMOUNT_PATHS)
        if d_amount is not None:
            return d_amount
    return Decimal("0")


def transaction_date(txn: Transaction) -> Optional[datetime]:
    return parse_datetime(first_present(txn, ("Date", "date")))


def _name(designation: Dict[str, Any], nested: str, flat: str) -> Optional[str]:
    return pick_string(designation, (nested,)) or pick_string(designation, (flat,))


def extract_designations(txn: Transaction, fallback_date: Optional[datetime] = None) -> List[Designation]:
    """Designations of one gift; missing amount/date are inherited from the parent."""
    raw = read_value(txn, "Designations")
    if not isinstance(raw, list) or not raw:
        return []

    parent_date = transaction_date(txn) or fallback_date
    out: List[Designation] = []
    for d in raw:
        if not isinstance(d, dict):
            continue
        fund = _name(d, "Fund.Name", "FundName")
        campaign = _name(d, "Campaign.Name", "CampaignName")
        appeal = _name(d, "Appeal.Name", "AppealName")
        amount = pick_number(d, DESIGNATION_AMOUNT_PATHS)
        if amount is None:
            amount = transaction_amount(txn)
        date = parse_datetime(first_present(d, ("Date", "date"))) or parent_date

        if not fund and not campaign and not appeal and not amount:
            continue
        out.append(Designation(fund, campaign, appeal, amount, date))
    return out


# ---------------------------
# Stats
# ---------------------------

def summarize_transactions(transactions: Iterable[Transaction], now: Optional[datetime] = None) -> TransactionSummary:
    """
    Single pass over the history. Only included (gift-type, non-refunded)
    transactions count. Last gift is the latest-dated included transaction;
    on a date tie the first one seen wins (pages arrive newest first).
    """
    now = now or utc_now()
    current_year_start, _ = year_bounds(now.year)
    last_year_start, last_year_end = year_bounds(now.year - 1)

    stats = GivingStats()
    summary = TransactionSummary(stats=stats)

    for txn in transactions:
        summary.transaction_count += 1
        if not should_include_transaction(txn):
            continue
        summary.included_count += 1

        amount = transaction_amount(txn)
        stats.lifetime_total += amount

        when = transaction_date(txn)
        if when is not None:
            if last_year_start <= when <= last_year_end:
                stats.last_year_total += amount
            if current_year_start <= when <= now:
                stats.ytd_total += amount
            if stats.last_gift_date is None or when > stats.last_gift_date:
                stats.last_gift_date = when
                stats.last_gift_amount = amount

        summary.designations.extend(extract_designations(txn, when))

    return summary


def recent_transactions(transactions: Iterable[Transaction], limit: int = 5) -> List[Dict[str, Any]]:
    rows = []
    for txn in transactions:
        if not should_include_transaction(txn):
            continue
        rows.append((transaction_date(txn), txn))
    rows.sort(key=lambda r: r[0] or datetime.min, reverse=True)
    return [
        {
            "id": first_present(txn, ("Id", "id")),
            "amount": float(transaction_amount(txn)),
            "date": iso_or_none(when),
            "type": transaction_type(txn),
        }
        for when, txn in rows[:limit]
    ]


def combine_household_totals(member_stats: Iterable[Optional[GivingStats]]) -> GivingStats:
    total = GivingStats()
    for s in member_stats:
        if s is None:
            continue
        total.lifetime_total += s.lifetime_total
        total.last_year_total += s.last_year_total
        total.ytd_total += s.ytd_total
        if s.last_gift_date and (total.last_gift_date is None or s.last_gift_date > total.last_gift_date):
            total.last_gift_date = s.last_gift_date
            total.last_gift_amount = s.last_gift_amount if s.last_gift_amount is not None else Decimal("0")
    return total


# ---------------------------
# Fetch + compute
# ---------------------------

async def fetch_transactions(client: BloomerangClient, constituent_id: int, *, take: int = DEFAULT_TAKE) -> PageWalk:
    params = {
        "accountId": constituent_id,
        "orderBy": "Date",
        "orderDirection": "Desc",
    }
    return await walk_pages(client, TRANSACTIONS_PATH, params, take=take)


async def calculate_giving_stats(
    client: BloomerangClient,
    constituent_id: int,
    *,
    now: Optional[datetime] = None,
) -> StatsResult:
    """Stats over the complete history, or no stats at all if any page fails."""
    walk = await fetch_transactions(client, constituent_id)
    if not walk.ok:
        log.warning("[giving] transactions walk failed constituent=%s urls=%s", constituent_id, len(walk.request_urls))
        return StatsResult(ok=False, constituent_id=constituent_id, request_urls=walk.request_urls, walk=walk)

    summary = summarize_transactions(walk.items, now=now)
    log.info(
        "[giving] constituent=%s transactions=%s included=%s lifetime=%s",
        constituent_id, summary.transaction_count, summary.included_count, summary.stats.lifetime_total,
    )
    return StatsResult(
        ok=True,
        constituent_id=constituent_id,
        stats=summary.stats,
        transactions=walk.items,
        designations=summary.designations,
        transaction_count=summary.transaction_count,
        included_count=summary.included_count,
        request_urls=walk.request_urls,
        walk=walk,
    )
