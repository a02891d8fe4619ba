"""
EnrichmentMerger - fans out to a record's relations and merges the results.

Per relation outcome:
- success: payload stored under the relation name, children scheduled
- NotFoundError / not applicable: stored as absent (None), record stays complete
- RateLimitedError / TransientError / other marketplace errors: absent, record partial
- UnauthorizedError: every running fetch is cancelled and the error propagates
"""

import asyncio
from typing import Any, Awaitable, Sequence

from loguru import logger

from marketsync.enrichment.insights import build_claim_insights
from marketsync.enrichment.relations import RELATION_PLANS, RelationSpec, plan_names
from marketsync.enrichment.types import EnrichedRecord, EnrichmentKey, ResourceType
from marketsync.services.client import MarketplaceClient
from marketsync.services.errors import MarketplaceError, NotFoundError, UnauthorizedError
from marketsync.settings import global_settings
from marketsync.utils import Clock, utc_now


async def gather_or_cancel(aws: Sequence[Awaitable[Any]]) -> list[Any]:
    """
    Run awaitables concurrently; on the first failure cancel the rest and re-raise.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class _MergeState:
    """Mutable accumulator of one enrich() call."""

    def __init__(self, names: list[str]):
        self.related: dict[str, Any] = {name: None for name in names}
        self.failed: list[str] = []


class EnrichmentMerger:
    """
    Builds EnrichedRecords from a core payload and a relation plan.

    Relation fetches of one account share a semaphore, so at most
    ``concurrency`` of them are in flight per account however many
    records are being enriched at once.

    Usage:
        merger = EnrichmentMerger(client)
        record = await merger.enrich(key, order_payload, token)
    """

    def __init__(
        self,
        client: MarketplaceClient,
        concurrency: int | None = None,
        clock: Clock = utc_now,
    ):
        self._client = client
        self._concurrency = concurrency or global_settings.enrichment_concurrency
        self._clock = clock
        self._account_slots: dict[str, asyncio.Semaphore] = {}

    def _slots_for(self, account_id: str) -> asyncio.Semaphore:
        if account_id not in self._account_slots:
            self._account_slots[account_id] = asyncio.Semaphore(self._concurrency)
        return self._account_slots[account_id]

    async def enrich(
        self,
        key: EnrichmentKey,
        core: dict[str, Any],
        token: str,
        relations: Sequence[RelationSpec] | None = None,
    ) -> EnrichedRecord:
        """
        Merge ``core`` with every relation of the plan.

        Args:
            key: Identity of the record
            core: Base resource payload (must not be empty)
            token: Account access token
            relations: Plan to use, defaults to the plan of the key's resource type

        Raises:
            UnauthorizedError: The token was rejected by any relation fetch
        """
        if not core:
            raise ValueError(f"Cannot enrich {key} without a core payload")

        plan = tuple(relations if relations is not None else RELATION_PLANS[key.resource_type])
        state = _MergeState(plan_names(plan))

        await self._run_level(key, plan, core, token, state)

        record = EnrichedRecord(
            key=key,
            core=core,
            related=state.related,
            partial=bool(state.failed),
            failed_relations=sorted(state.failed),
            fetched_at=self._clock(),
        )
        if key.resource_type == ResourceType.CLAIM:
            record.insights = build_claim_insights(record).model_dump(mode="json")

        if record.partial:
            logger.warning(
                f"Partial enrichment for {key}: failed relations {record.failed_relations}"
            )
        return record

    async def enrich_many(
        self,
        items: Sequence[tuple[EnrichmentKey, dict[str, Any]]],
        token: str,
        relations: Sequence[RelationSpec] | None = None,
    ) -> list[EnrichedRecord]:
        """Enrich several cores concurrently; results keep the input order."""
        return await gather_or_cancel(
            [self.enrich(key, core, token, relations) for key, core in items]
        )

    async def _run_level(
        self,
        key: EnrichmentKey,
        specs: Sequence[RelationSpec],
        parent: dict[str, Any],
        token: str,
        state: _MergeState,
    ) -> None:
        if not specs:
            return
        await gather_or_cancel(
            [self._run_relation(key, spec, parent, token, state) for spec in specs]
        )

    async def _run_relation(
        self,
        key: EnrichmentKey,
        spec: RelationSpec,
        parent: dict[str, Any],
        token: str,
        state: _MergeState,
    ) -> None:
        target = spec.target(parent)
        if target is None:
            return

        try:
            async with self._slots_for(key.account_id):
                payload = await self._client.fetch_resource(
                    spec.resource,
                    target.resource_id,
                    token,
                    account_id=key.account_id,
                    params=target.params,
                )
        except NotFoundError:
            logger.debug(f"{key}: relation '{spec.name}' not found, recorded as absent")
            return
        except UnauthorizedError:
            raise
        except MarketplaceError as e:
            state.failed.append(spec.name)
            logger.debug(f"{key}: relation '{spec.name}' degraded ({e.kind}): {e}")
            return

        if spec.transform is not None:
            payload = spec.transform(payload)
        state.related[spec.name] = payload

        if spec.children and isinstance(payload, dict):
            await self._run_level(key, spec.children, payload, token, state)
