"""
Relation plans: which sub-resources complete a record of each resource type.

A plan is a tuple of RelationSpec. Level-1 specs read their target from the
core payload; ``children`` read theirs from the parent relation's payload and
only run once the parent fetch succeeded (shipment -> costs, sla, history).
"""

from dataclasses import dataclass, field
from typing import Any, Callable

from marketsync.enrichment.types import ResourceType


@dataclass(frozen=True)
class RelationTarget:
    """Concrete call for one relation."""

    resource_id: str | None = None
    params: dict[str, Any] | None = None


@dataclass(frozen=True)
class RelationSpec:
    """A named sub-resource fetched to complete an enriched record."""

    name: str
    resource: str  # Endpoint name in the catalog
    target: Callable[[dict[str, Any]], RelationTarget | None]
    children: tuple["RelationSpec", ...] = field(default=())
    transform: Callable[[Any], Any] | None = None

    def names(self) -> list[str]:
        """This relation's name followed by every descendant's."""
        result = [self.name]
        for child in self.children:
            result.extend(child.names())
        return result


def dig(payload: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None on any missing step."""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def by_id(*path: str | int) -> Callable[[dict[str, Any]], RelationTarget | None]:
    """Target whose resource id sits at ``path`` in the parent payload."""

    def extract(payload: dict[str, Any]) -> RelationTarget | None:
        value = dig(payload, *path)
        if value in (None, ""):
            return None
        return RelationTarget(resource_id=str(value))

    return extract


def _claims_of_order(order: dict[str, Any]) -> RelationTarget | None:
    order_id = order.get("id")
    if order_id is None:
        return None
    return RelationTarget(params={"resource": "order", "resource_id": str(order_id)})


def _order_of_claim(claim: dict[str, Any]) -> RelationTarget | None:
    # Claims point at their resource; only order-backed claims have an order
    if claim.get("resource") not in (None, "order"):
        return None
    return by_id("resource_id")(claim)


def _search_results(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


SHIPMENT_CHILDREN: tuple[RelationSpec, ...] = (
    RelationSpec("costs", "shipment_costs", by_id("id")),
    RelationSpec("sla", "shipment_sla", by_id("id")),
    RelationSpec("statusHistory", "shipment_history", by_id("id")),
)

ORDER_RELATIONS: tuple[RelationSpec, ...] = (
    RelationSpec(
        "shipping", "shipment", by_id("shipping", "id"), children=SHIPMENT_CHILDREN
    ),
    RelationSpec("item", "item", by_id("order_items", 0, "item", "id")),
    RelationSpec(
        "claims", "claims_search", _claims_of_order, transform=_search_results
    ),
)

CLAIM_RELATIONS: tuple[RelationSpec, ...] = (
    RelationSpec(
        "order",
        "order",
        _order_of_claim,
        children=(RelationSpec("shipping", "shipment", by_id("shipping", "id")),),
    ),
    RelationSpec("returns", "claim_returns", by_id("id")),
    RelationSpec("messages", "claim_messages", by_id("id")),
    RelationSpec("attachments", "claim_attachments", by_id("id")),
)

RETURN_RELATIONS: tuple[RelationSpec, ...] = (
    RelationSpec("claims", "claim", by_id("claim_id")),
    RelationSpec(
        "shipping",
        "shipment",
        by_id("shipments", 0, "shipment_id"),
        children=SHIPMENT_CHILDREN,
    ),
)

SHIPMENT_RELATIONS: tuple[RelationSpec, ...] = SHIPMENT_CHILDREN

RELATION_PLANS: dict[ResourceType, tuple[RelationSpec, ...]] = {
    ResourceType.ORDER: ORDER_RELATIONS,
    ResourceType.CLAIM: CLAIM_RELATIONS,
    ResourceType.RETURN: RETURN_RELATIONS,
    ResourceType.SHIPMENT: SHIPMENT_RELATIONS,
}

# Endpoint serving the base resource of each type
CORE_ENDPOINTS: dict[ResourceType, str] = {
    ResourceType.ORDER: "order",
    ResourceType.CLAIM: "claim",
    ResourceType.RETURN: "return",
    ResourceType.SHIPMENT: "shipment",
}


def plan_names(plan: tuple[RelationSpec, ...] | list[RelationSpec]) -> list[str]:
    """Flattened relation names of a plan; names must be unique."""
    names: list[str] = []
    for spec in plan:
        names.extend(spec.names())
    if len(names) != len(set(names)):
        raise ValueError(f"Relation names must be unique within a plan: {names}")
    return names
