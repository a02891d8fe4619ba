"""
Derived claim fields computed from an enriched claim's messages and attachments.
"""

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from marketsync.enrichment.types import EnrichedRecord, parse_marketplace_datetime

Level = Literal["low", "medium", "high"]

ACTION_DEADLINE = timedelta(days=3)


class ClaimInsights(BaseModel):
    """Follow-up hints for a claim."""

    message_count: int = 0
    unread_messages: int = 0
    last_message_at: datetime | None = None
    last_message_sender: str | None = None
    attachments_count: int = 0
    priority: Level = "low"
    reputation_impact: Level = "low"
    seller_action_required: bool = False
    action_deadline: datetime | None = None
    average_response_minutes: int = 0
    tags: list[str] = Field(default_factory=list)


class MissingDataReport(BaseModel):
    """How many enriched claims still lack each kind of derived data."""

    total_records: int = 0
    missing_timeline: int = 0
    missing_attachments: int = 0
    missing_priority: int = 0
    missing_deadlines: int = 0
    records_needing_enrichment: int = 0
    percentage_incomplete: int = 0


def _messages(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("messages") or payload.get("data") or []
    if not isinstance(payload, list):
        return []
    return [message for message in payload if isinstance(message, dict)]


def _attachments(payload: Any) -> list[Any]:
    if isinstance(payload, dict):
        payload = payload.get("attachments") or payload.get("data") or []
    return payload if isinstance(payload, list) else []


def _sender(message: dict[str, Any]) -> str | None:
    sender = message.get("sender_role")
    if sender:
        return sender
    origin = message.get("from")
    if isinstance(origin, dict):
        return origin.get("role")
    return None


def priority_for(attachments: int, unread: int) -> Level:
    if attachments > 3 or unread > 3:
        return "high"
    if unread > 1:
        return "medium"
    return "low"


def reputation_impact_for(attachments: int, unread: int) -> Level:
    if attachments > 5:
        return "high"
    if unread > 2:
        return "medium"
    return "low"


def average_response_minutes(timestamps: list[datetime]) -> int:
    """Mean gap between consecutive messages, 0 with fewer than two."""
    if len(timestamps) < 2:
        return 0
    gaps = [
        (later - earlier).total_seconds() / 60
        for earlier, later in zip(timestamps, timestamps[1:])
    ]
    return round(sum(gaps) / len(gaps))


def build_claim_insights(record: EnrichedRecord) -> ClaimInsights:
    messages = _messages(record.related.get("messages"))
    attachments = len(_attachments(record.related.get("attachments")))

    dated = sorted(
        (
            (stamp, message)
            for message in messages
            if (stamp := parse_marketplace_datetime(message.get("date_created")))
        ),
        key=lambda pair: pair[0],
    )
    unread = sum(1 for message in messages if not message.get("date_read"))

    last_at, last_message = dated[-1] if dated else (None, None)
    priority = priority_for(attachments, unread)

    tags = []
    if attachments > 2:
        tags.append("many_evidences")
    if unread > 1:
        tags.append("pending_response")
    if priority == "high":
        tags.append("high_priority")

    return ClaimInsights(
        message_count=len(messages),
        unread_messages=unread,
        last_message_at=last_at,
        last_message_sender=_sender(last_message) if last_message else None,
        attachments_count=attachments,
        priority=priority,
        reputation_impact=reputation_impact_for(attachments, unread),
        seller_action_required=unread > 0,
        action_deadline=last_at + ACTION_DEADLINE if last_at else None,
        average_response_minutes=average_response_minutes([stamp for stamp, _ in dated]),
        tags=tags,
    )


def analyze_missing_data(records: list[EnrichedRecord]) -> MissingDataReport:
    """Count claims whose enrichment is still incomplete."""
    report = MissingDataReport(total_records=len(records))

    for record in records:
        needs_update = False
        insights = record.insights or {}

        if not _messages(record.related.get("messages")):
            report.missing_timeline += 1
            needs_update = True
        if record.is_absent("attachments"):
            report.missing_attachments += 1
            needs_update = True
        if not insights.get("priority"):
            report.missing_priority += 1
            needs_update = True
        if not insights.get("action_deadline"):
            report.missing_deadlines += 1
            needs_update = True

        if needs_update:
            report.records_needing_enrichment += 1

    if records:
        report.percentage_incomplete = round(
            report.records_needing_enrichment / len(records) * 100
        )
    return report
