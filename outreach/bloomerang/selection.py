# outreach/bloomerang/selection.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Generic, List, Optional, Pattern, Sequence, TypeVar

from outreach.utils.common import months_ago, utc_now

R = TypeVar("R")


@dataclass(frozen=True)
class SelectionPolicy:
    """
    small_threshold: below this many records, send everything.
    pad_to:          fill the recent set with the next most recent records up to this size.
    hard_cap:        ceiling for padding and keyword additions (the recent window is never trimmed).
    keyword_extra:   when hard_cap is None, keyword matches may add this many beyond the recent set.
    """
    keywords: Pattern[str]
    small_threshold: int = 0
    pad_to: int = 0
    hard_cap: Optional[int] = None
    keyword_extra: int = 0
    recent_months: int = 12

    def cap_for(self, recent_count: int) -> int:
        if self.hard_cap is not None:
            return self.hard_cap
        return recent_count + self.keyword_extra


def keyword_pattern(words: Sequence[str]) -> Pattern[str]:
    return re.compile("|".join(re.escape(w) for w in words), re.IGNORECASE)


@dataclass
class Selection(Generic[R]):
    selected: List[R] = field(default_factory=list)
    used_count: int = 0
    total_count: int = 0


def _newest_first(records: Sequence[R], when: Callable[[R], Optional[datetime]]) -> List[R]:
    return sorted(records, key=lambda r: when(r) or datetime.min, reverse=True)


def select_for_summary(
    records: Sequence[R],
    policy: SelectionPolicy,
    *,
    record_id: Callable[[R], int],
    when: Callable[[R], Optional[datetime]],
    text: Callable[[R], str],
    now: Optional[datetime] = None,
) -> Selection[R]:
    """
    Recency first, then signal: every record from the trailing window, padded
    with the next most recent ones, then older keyword matches, all bounded by
    the policy cap. Output is newest first.
    """
    total = len(records)
    if not total:
        return Selection(total_count=0)

    ordered = _newest_first(records, when)
    if total < policy.small_threshold:
        return Selection(selected=ordered, used_count=total, total_count=total)

    cutoff = months_ago(now or utc_now(), policy.recent_months)

    selected: List[R] = []
    seen: set = set()

    def take(r: R) -> None:
        seen.add(record_id(r))
        selected.append(r)

    for r in ordered:
        ts = when(r)
        if ts is not None and ts >= cutoff and record_id(r) not in seen:
            take(r)

    cap = policy.cap_for(len(selected))

    for r in ordered:
        if len(selected) >= min(policy.pad_to, cap):
            break
        if record_id(r) not in seen:
            take(r)

    for r in ordered:
        if len(selected) >= cap:
            break
        if record_id(r) in seen:
            continue
        if policy.keywords.search(text(r) or ""):
            take(r)

    selected = _newest_first(selected, when)
    return Selection(selected=selected, used_count=len(selected), total_count=total)
