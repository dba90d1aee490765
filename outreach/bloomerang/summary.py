# outreach/bloomerang/summary.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from openai import APIStatusError, AsyncOpenAI, OpenAIError

from outreach.bloomerang.client import BloomerangClient
from outreach.bloomerang.interactions import (
    Interaction,
    fetch_all_interactions,
    filter_personal_interactions,
    last_meaningful_interaction,
    select_interactions_for_summary,
)
from outreach.bloomerang.interests import GivingInterest, build_household_giving_interests
from outreach.bloomerang.notes import Note, build_activity_meta, fetch_household_notes, select_notes_for_summary
from outreach.config import settings

log = logging.getLogger(__name__)

OPENAI_TEMPERATURE = 0.35
OPENAI_MAX_TOKENS = 900
MAX_INTEREST_BULLETS = 6

SYSTEM_PROMPT = "You summarize donor interactions and notes for callers. Only output valid JSON."
INSTRUCTIONS = [
    "You are assisting a fundraiser preparing for personal donor calls.",
    'Output JSON with: { "keyPoints": [...], "recentTimeline": [...], "lastMeaningfulInteraction": '
    '{ "date": "...", "channel": "...", "summary": "..." }, "suggestedNextSteps": [...], '
    '"givingInterests": [...], "recommendedOpeningLine": "...", "suggestedVoicemailMessage": "..." }.',
    "keyPoints: 5-8 concise bullets. recentTimeline: 3-8 bullets, most recent first, and include date + channel "
    "when from interactions. suggestedNextSteps: 1-3 actionable bullets for a phone call.",
    "givingInterests: 3-6 concise bullets in plain language that summarize giving patterns from the provided "
    "interests (avoid IDs).",
    "recommendedOpeningLine: 1-2 sentences, natural phone-call opener. Reference the most recent meaningful "
    "personal interaction (Phone/Text/Email/InPerson) if present and nod to at least one concrete giving interest "
    "when possible. Avoid donation asks. If no meaningful interaction exists, ground the opener in the most recent "
    "note or their relationship with the organization, still no money ask.",
    "suggestedVoicemailMessage: 1-3 sentences, concise and warm. Mention the outreach purpose/context if provided, "
    "avoid any donation ask, and include a gentle call-back request.",
    "Emphasize interactions for recency and call prep; include dates and channels for timeline bullets when based "
    "on interactions.",
    "Keep tone concise, donor-call friendly, and actionable.",
]


class SummaryError(RuntimeError):
    """The summarization collaborator failed. Not retried."""

    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.status = status


@dataclass
class SummaryInputs:
    notes: List[Note]
    interactions: List[Interaction]
    last_meaningful: Optional[Interaction]
    giving_interests: List[GivingInterest] = field(default_factory=list)
    outreach_goal: Optional[str] = None
    outreach_context: Optional[str] = None


Summarizer = Callable[[List[str]], Awaitable[Dict[str, Any]]]


# ---------------------------
# Cache
# ---------------------------

class SummaryCache:
    """Key -> successful summary payload, expiring after `ttl_seconds`."""

    def __init__(self, ttl_seconds: float = 900, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    @staticmethod
    def key_for(member_ids: Sequence[int], goal: Optional[str], context: Optional[str]) -> str:
        return f"{'|'.join(str(i) for i in member_ids)}::{goal or ''}::{context or ''}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, payload = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return payload

    def set(self, key: str, payload: Dict[str, Any]) -> None:
        if not payload.get("ok"):
            return
        self._entries[key] = (self._clock(), payload)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------
# Line formatting
# ---------------------------

def readable_date(value: Optional[datetime]) -> str:
    return value.date().isoformat() if value else "Unknown date"


def format_usd(amount: Decimal) -> str:
    return f"${amount or 0:,.2f}"


def format_note_line(note: Note) -> str:
    return f"{readable_date(note.created_date)} (Acct {note.account_id}): {note.note}"


def format_interaction_line(interaction: Interaction) -> str:
    when = readable_date(interaction.created_date or interaction.date)
    channel = interaction.channel or "Interaction"
    if interaction.is_inbound is not None:
        channel += " - Inbound" if interaction.is_inbound else " - Outbound"
    subject = f" | {interaction.subject}" if interaction.subject else ""
    note = f" | Note: {interaction.note_text}" if interaction.note_text else ""
    return f"{when} [{channel}]{subject}{note}"


def format_interest_line(interest: GivingInterest) -> str:
    last = interest.last_gift_date.isoformat() if interest.last_gift_date else "Unknown date"
    return f"- {interest.label()} (Total: {format_usd(interest.total_amount)}; Last: {last})"


def build_prompt_lines(inputs: SummaryInputs) -> List[str]:
    lines = list(INSTRUCTIONS)
    if inputs.outreach_goal:
        lines.append(f"Outreach goal: {inputs.outreach_goal}")
    if inputs.outreach_context:
        lines.append(f"Outreach context: {inputs.outreach_context}")
    if inputs.giving_interests:
        lines.append("Giving Interests (derived from transactions):")
        lines.extend(format_interest_line(i) for i in inputs.giving_interests)
    lines.append("Household interactions to summarize:")
    lines.extend(f"- {format_interaction_line(i)}" for i in inputs.interactions)
    lines.append("Household notes to summarize:")
    lines.extend(f"- {format_note_line(n)}" for n in inputs.notes)
    if inputs.last_meaningful:
        lines.append(f"The last meaningful interaction appears to be {format_interaction_line(inputs.last_meaningful)}.")
    else:
        lines.append("No meaningful interaction was found. Please infer if possible.")
    return lines


# ---------------------------
# Fallback text
# ---------------------------

def _clip(text: Optional[str], limit: int) -> Optional[str]:
    text = (text or "").strip()
    if not text:
        return None
    return text if len(text) <= limit else f"{text[:limit - 3]}…"


def humanize_channel(channel: Optional[str]) -> Optional[str]:
    if not channel:
        return None
    c = channel.lower()
    if "phone" in c or "call" in c:
        return "phone call"
    if "text" in c:
        return "text exchange"
    if "email" in c:
        return "email conversation"
    if "inperson" in c or "in person" in c:
        return "in-person visit"
    return c


def interest_bullets(interests: Sequence[GivingInterest], model_bullets: Sequence[str] = ()) -> List[str]:
    cleaned = [b.strip() for b in model_bullets if b and b.strip()][:MAX_INTEREST_BULLETS]
    if cleaned:
        return cleaned
    out = []
    for i in interests[:MAX_INTEREST_BULLETS]:
        last = i.last_gift_date.isoformat() if i.last_gift_date else "most recent gift date unknown"
        out.append(f"{i.label()}: total {format_usd(i.total_amount)}, last gift {last}")
    return out


def opening_line(inputs: SummaryInputs, provided: Optional[str] = None) -> str:
    if provided and provided.strip():
        return provided.strip()

    top = inputs.giving_interests[0] if inputs.giving_interests else None
    interest_label = top.label() if top else None
    interest_snippet = (
        f"{top.label()} (most recent gift {top.last_gift_date.isoformat()})"
        if top and top.last_gift_date else interest_label
    )
    latest_note = max(inputs.notes, key=lambda n: n.created_date) if inputs.notes else None

    last = inputs.last_meaningful
    if last:
        channel = humanize_channel(last.channel) or "recent conversation"
        topic = (
            _clip(last.note_text or last.subject, 160)
            or (_clip(latest_note.note, 160) if latest_note else None)
            or interest_snippet
            or "your recent updates"
        )
        return (
            f"Great to reconnect after our {channel} on {readable_date(last.created_date or last.date)}. "
            f"I appreciated hearing about {topic}. How have things been since?"
        )

    if latest_note:
        topic = _clip(latest_note.note, 160) or interest_snippet or "your recent updates"
        return (
            f"Thanks for sharing on {readable_date(latest_note.created_date)} about {topic}. "
            "I'd love to catch up and hear how things are going."
        )

    if interest_label:
        return (
            f"Thank you for your continued support for {interest_label}. "
            "I'd love to connect soon and hear how things are going."
        )
    return "Looking forward to reconnecting and hearing how you have been involved with us recently."


def voicemail_message(inputs: SummaryInputs, provided: Optional[str] = None) -> str:
    if provided and provided.strip():
        return provided.strip()

    purpose = _clip(inputs.outreach_context, 180)
    if not purpose and inputs.outreach_goal and inputs.outreach_goal.strip():
        purpose = f"{inputs.outreach_goal.strip()} outreach"
    if purpose:
        return (
            "Hi there, this is a quick voicemail from our team. "
            f"I wanted to follow up regarding {purpose}. Please give us a call back when you have a moment."
        )
    if inputs.giving_interests:
        return (
            "Hi there, this is a quick voicemail from our team. "
            f"I wanted to share a brief update about {inputs.giving_interests[0].label()}. "
            "Please call us back when you have a moment."
        )
    return "Hi there, this is a quick voicemail from our team. We would love to connect when you have a moment."


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, bool):
            continue
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
        elif isinstance(item, (int, float)):
            out.append(str(item))
    return out


def sanitize_summary(raw: Dict[str, Any], inputs: SummaryInputs) -> Dict[str, Any]:
    """Coerce whatever the model returned into the fixed summary shape."""
    last = raw.get("lastMeaningfulInteraction") if isinstance(raw.get("lastMeaningfulInteraction"), dict) else {}

    def text(d: Dict[str, Any], key: str) -> Optional[str]:
        value = d.get(key)
        return value if isinstance(value, str) else None

    return {
        "keyPoints": _strings(raw.get("keyPoints")),
        "recentTimeline": _strings(raw.get("recentTimeline")),
        "lastMeaningfulInteraction": {
            "date": text(last, "date"),
            "channel": text(last, "channel"),
            "summary": text(last, "summary"),
        },
        "suggestedNextSteps": _strings(raw.get("suggestedNextSteps")),
        "givingInterests": interest_bullets(inputs.giving_interests, _strings(raw.get("givingInterests"))),
        "recommendedOpeningLine": opening_line(inputs, text(raw, "recommendedOpeningLine")),
        "suggestedVoicemailMessage": voicemail_message(inputs, text(raw, "suggestedVoicemailMessage")),
    }


def empty_activity_summary(inputs: SummaryInputs) -> Dict[str, Any]:
    return {
        "keyPoints": ["No household activity was found to summarize."],
        "recentTimeline": [],
        "lastMeaningfulInteraction": {"date": None, "channel": None, "summary": None},
        "suggestedNextSteps": ["Capture a recent interaction before the next call."],
        "givingInterests": interest_bullets(inputs.giving_interests),
        "recommendedOpeningLine": opening_line(inputs),
        "suggestedVoicemailMessage": voicemail_message(inputs),
    }


# ---------------------------
# OpenAI
# ---------------------------

async def summarize_with_openai(prompt_lines: List[str]) -> Dict[str, Any]:
    """One chat completion in JSON mode. Every failure becomes a SummaryError."""
    if not settings.OPENAI_API_KEY:
        raise SummaryError("OPENAI_API_KEY is not configured.", status=500)

    client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    try:
        response = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            temperature=OPENAI_TEMPERATURE,
            max_tokens=OPENAI_MAX_TOKENS,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": "\n".join(prompt_lines)},
            ],
        )
    except APIStatusError as e:
        log.error("[summary] openai status=%s", e.status_code)
        raise SummaryError(str(e)[:500] or "OpenAI request failed.", status=e.status_code) from e
    except OpenAIError as e:
        log.error("[summary] openai request failed: %s", e)
        raise SummaryError(f"OpenAI request failed: {e}") from e
    finally:
        await client.close()

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise SummaryError("OpenAI returned an empty response.")
    try:
        parsed = json.loads(content)
    except ValueError as e:
        raise SummaryError("Failed to parse OpenAI response.") from e
    if not isinstance(parsed, dict):
        raise SummaryError("Failed to parse OpenAI response.")
    return parsed


# ---------------------------
# Build
# ---------------------------

async def build_activity_summary(
    client: BloomerangClient,
    member_ids: Sequence[int],
    outreach_goal: Optional[str] = None,
    outreach_context: Optional[str] = None,
    *,
    summarizer: Summarizer = summarize_with_openai,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Notes + personal interactions + giving interests for a household, reduced
    to a bounded prompt and summarized. CRM failures come back as an
    `ok: False` payload; summarizer failures raise SummaryError.
    """
    notes_walk, notes = await fetch_household_notes(client, member_ids)
    if not notes_walk.ok:
        log.error("[summary] notes fetch failed members=%s urls=%s", list(member_ids), notes_walk.request_urls)
        return {**notes_walk.failure_detail(), "ok": False}

    interactions_walk, interactions = await fetch_all_interactions(client, member_ids)
    if not interactions_walk.ok:
        log.error("[summary] interactions fetch failed members=%s urls=%s", list(member_ids), interactions_walk.request_urls)
        return {**interactions_walk.failure_detail(), "ok": False}

    interests = await build_household_giving_interests(client, list(member_ids))
    if not interests.ok:
        log.warning("[summary] giving interests unavailable members=%s", list(member_ids))

    personal = filter_personal_interactions(interactions)
    interaction_selection = select_interactions_for_summary(personal, now=now)
    note_selection = select_notes_for_summary(notes, now=now)

    notes_meta = {**build_activity_meta(n.created_date for n in notes), "usedCount": note_selection.used_count}
    interactions_meta = {
        **build_activity_meta(i.created_date for i in personal),
        "usedCount": interaction_selection.used_count,
    }
    log.info(
        "[summary] members=%s notes=%s/%s interactions=%s/%s",
        list(member_ids), note_selection.used_count, note_selection.total_count,
        interaction_selection.used_count, interaction_selection.total_count,
    )

    inputs = SummaryInputs(
        notes=note_selection.selected,
        interactions=interaction_selection.selected,
        last_meaningful=last_meaningful_interaction(personal),
        giving_interests=interests.interests if interests.ok else [],
        outreach_goal=outreach_goal,
        outreach_context=outreach_context,
    )

    if not inputs.notes and not inputs.interactions:
        summary = empty_activity_summary(inputs)
    else:
        summary = sanitize_summary(await summarizer(build_prompt_lines(inputs)), inputs)

    return {
        "ok": True,
        "notesMeta": notes_meta,
        "interactionsMeta": interactions_meta,
        "summary": summary,
    }


# ---------------------------
# Notes-only summary
# ---------------------------

NOTES_INSTRUCTIONS = [
    "You are assisting a donor caller. Summarize the household notes succinctly.",
    "Return JSON with arrays: keyPoints (5-8 bullets), recentTimeline (3-6 bullets), "
    "suggestedNextSteps (1-3 bullets).",
    "Keep the tone concise, friendly, and suitable for a phone call.",
]


def format_authored_note_line(note: Note) -> str:
    author = f" by {note.created_name}" if note.created_name else ""
    return f"{readable_date(note.created_date)}{author}: {note.note}"


def build_notes_prompt_lines(notes: Sequence[Note]) -> List[str]:
    return [*NOTES_INSTRUCTIONS, "Notes to summarize:", *(f"- {format_authored_note_line(n)}" for n in notes)]


async def build_notes_summary(
    client: BloomerangClient,
    member_ids: Sequence[int],
    *,
    summarizer: Summarizer = summarize_with_openai,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Household notes alone, selected and summarized into key points, timeline and next steps."""
    walk, notes = await fetch_household_notes(client, member_ids)
    if not walk.ok:
        log.error("[summary] notes fetch failed members=%s urls=%s", list(member_ids), walk.request_urls)
        return {**walk.failure_detail(), "ok": False}

    selection = select_notes_for_summary(notes, now=now)
    notes_meta = {**build_activity_meta(n.created_date for n in notes), "usedCount": selection.used_count}

    if not selection.selected:
        summary = {
            "keyPoints": ["No household notes were found to summarize."],
            "recentTimeline": [],
            "suggestedNextSteps": ["Capture a recent interaction note before the next call."],
        }
    else:
        raw = await summarizer(build_notes_prompt_lines(selection.selected))
        summary = {
            "keyPoints": _strings(raw.get("keyPoints")),
            "recentTimeline": _strings(raw.get("recentTimeline")),
            "suggestedNextSteps": _strings(raw.get("suggestedNextSteps")),
        }
    return {"ok": True, "notesMeta": notes_meta, "summary": summary}
