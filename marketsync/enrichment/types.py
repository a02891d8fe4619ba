"""
Enrichment data model.

An EnrichmentKey names what is cached, an EnrichedRecord is what gets cached:
the base resource plus every planned relation, where ``None`` marks a relation
that is absent (failed, missing upstream, or not applicable).
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from marketsync.utils import utc_now

LISTING_PREFIX = "search:"


class ResourceType(str, Enum):
    """Kinds of records the pipeline enriches."""

    ORDER = "order"
    CLAIM = "claim"
    RETURN = "return"
    SHIPMENT = "shipment"


def parse_marketplace_datetime(value: Any) -> datetime | None:
    """Parse the ISO-8601 timestamps the marketplace returns (offsets kept)."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class DateRange(BaseModel):
    """Inclusive calendar range; an open end is unbounded."""

    model_config = ConfigDict(frozen=True)

    date_from: date | None = None
    date_to: date | None = None

    @property
    def label(self) -> str:
        start = self.date_from.isoformat() if self.date_from else "*"
        end = self.date_to.isoformat() if self.date_to else "*"
        return f"{start}:{end}"

    @classmethod
    def from_label(cls, label: str) -> "DateRange":
        start, _, end = label.partition(":")
        return cls(
            date_from=None if start in ("", "*") else date.fromisoformat(start),
            date_to=None if end in ("", "*") else date.fromisoformat(end),
        )

    def contains(self, moment: datetime | date | str | None) -> bool:
        """Whether ``moment`` falls on a day inside the range."""
        if isinstance(moment, str):
            moment = parse_marketplace_datetime(moment)
        if moment is None:
            return self.date_from is None and self.date_to is None
        day = moment.date() if isinstance(moment, datetime) else moment
        if self.date_from and day < self.date_from:
            return False
        if self.date_to and day > self.date_to:
            return False
        return True


class EnrichmentKey(BaseModel):
    """Identity of a cached enrichment: one resource, or one account listing."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    resource_type: ResourceType
    resource_id: str

    @classmethod
    def listing(
        cls,
        account_id: str,
        resource_type: ResourceType,
        date_range: DateRange,
    ) -> "EnrichmentKey":
        return cls(
            account_id=account_id,
            resource_type=resource_type,
            resource_id=f"{LISTING_PREFIX}{date_range.label}",
        )

    @property
    def is_listing(self) -> bool:
        return self.resource_id.startswith(LISTING_PREFIX)

    @property
    def date_range(self) -> DateRange:
        if not self.is_listing:
            raise ValueError(f"{self} is not a listing key")
        return DateRange.from_label(self.resource_id[len(LISTING_PREFIX):])

    def __str__(self) -> str:
        return f"{self.account_id}/{self.resource_type.value}/{self.resource_id}"


class EnrichedRecord(BaseModel):
    """Denormalized merge of a base resource and its relations."""

    key: EnrichmentKey
    core: dict[str, Any]
    related: dict[str, Any] = Field(default_factory=dict)
    partial: bool = False
    failed_relations: list[str] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=utc_now)
    insights: dict[str, Any] | None = None

    def is_absent(self, relation: str) -> bool:
        return self.related.get(relation) is None

    def same_content(self, other: "EnrichedRecord") -> bool:
        """Equality of ``core`` and ``related``, ignoring fetch metadata."""
        return self.core == other.core and self.related == other.related

    @property
    def created_at(self) -> datetime | None:
        return parse_marketplace_datetime(self.core.get("date_created"))


class Keyset(BaseModel):
    """Client-tier lookup: one resource type for a set of accounts and a date range."""

    model_config = ConfigDict(frozen=True)

    resource_type: ResourceType
    account_ids: tuple[str, ...]
    date_range: DateRange = DateRange()

    @classmethod
    def of(
        cls,
        resource_type: ResourceType,
        account_ids: list[str] | tuple[str, ...],
        date_range: DateRange | None = None,
    ) -> "Keyset":
        return cls(
            resource_type=resource_type,
            account_ids=tuple(sorted(set(account_ids))),
            date_range=date_range or DateRange(),
        )

    @property
    def cache_key(self) -> str:
        return (
            f"{self.resource_type.value}:{'|'.join(self.account_ids)}:"
            f"{self.date_range.label}"
        )

    def involves(self, account_ids: list[str] | set[str]) -> bool:
        return bool(set(self.account_ids) & set(account_ids))


class AccountCredentials(BaseModel):
    """Token material handed over by the connection collaborator."""

    account_id: str
    access_token: str
    seller_id: str | None = None


TokenProvider = Callable[[str], Awaitable[AccountCredentials]]
