"""
Marketplace endpoint catalog.

Every resource the pipeline reads has one entry. Some routes exist in more
than one API version; ``fallbacks`` are tried in order when the primary path
answers 404, since a moved route and a missing resource look alike.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Endpoint:
    """A read-only marketplace route."""

    name: str
    primary: str
    fallbacks: tuple[str, ...] = ()
    requires_id: bool = True

    def paths(self, resource_id: str | None = None) -> list[str]:
        """Primary path followed by fallbacks, with ``{id}`` substituted."""
        if self.requires_id and not resource_id:
            raise ValueError(f"Endpoint '{self.name}' requires a resource id")
        templates = (self.primary, *self.fallbacks)
        if resource_id is None:
            return list(templates)
        return [template.replace("{id}", str(resource_id)) for template in templates]


MARKETPLACE_ENDPOINTS: dict[str, Endpoint] = {
    endpoint.name: endpoint
    for endpoint in (
        Endpoint("user", "/users/{id}"),
        Endpoint("order", "/orders/{id}"),
        Endpoint("orders_search", "/orders/search", requires_id=False),
        Endpoint("item", "/items/{id}"),
        Endpoint("shipment", "/shipments/{id}"),
        Endpoint("shipment_costs", "/shipments/{id}/costs"),
        Endpoint("shipment_sla", "/shipments/{id}/sla"),
        Endpoint("shipment_history", "/shipments/{id}/history"),
        Endpoint(
            "claim",
            "/post-purchase/v1/claims/{id}",
            fallbacks=("/marketplace/v2/claims/{id}",),
        ),
        Endpoint(
            "claims_search",
            "/post-purchase/v1/claims/search",
            fallbacks=("/marketplace/v2/claims/search",),
            requires_id=False,
        ),
        Endpoint(
            "claim_messages",
            "/post-purchase/v1/claims/{id}/messages",
            fallbacks=("/marketplace/v2/claims/{id}/messages",),
        ),
        Endpoint("claim_returns", "/post-purchase/v2/claims/{id}/returns"),
        Endpoint("claim_attachments", "/post-purchase/v1/claims/{id}/attachments"),
        Endpoint(
            "return",
            "/post-purchase/v2/returns/{id}",
            fallbacks=("/post-purchase/v1/returns/{id}",),
        ),
    )
}


def get_endpoint(name: str) -> Endpoint:
    """Look up an endpoint by name."""
    try:
        return MARKETPLACE_ENDPOINTS[name]
    except KeyError:
        raise ValueError(f"Unknown marketplace endpoint: {name}") from None
