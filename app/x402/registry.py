# app/x402/registry.py
"""
Route registry: which payment terms and which facilitator apply to a route.

The registry is filled once at startup and frozen before the gate serves
requests. Registration validates every entry and refuses a (method, path)
claimed by two facilitator bindings, so request-time lookup never has to
choose between facilitators.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from app.x402.errors import ConfigurationError
from app.x402.models import FacilitatorBinding, PaymentRequirementTemplate, normalize_route
from app.x402.networks import get_network, is_valid_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteEntry:
    method: str
    path: str
    template: PaymentRequirementTemplate
    binding: FacilitatorBinding


def validate_template(template: PaymentRequirementTemplate) -> None:
    """
    Check the invariants of a payment requirement template.

    Raises:
        ConfigurationError: on unknown network, bad payee address, non-positive
            price or timeout.
    """
    network = get_network(template.network)
    if template.price <= 0:
        raise ConfigurationError(
            f"Price for {template.resource_path} must be greater than zero, got {template.price}"
        )
    if template.max_timeout_seconds <= 0:
        raise ConfigurationError(
            f"maxTimeoutSeconds for {template.resource_path} must be positive"
        )
    if not is_valid_address(template.network, template.pay_to):
        raise ConfigurationError(
            f"payTo address {template.pay_to!r} is not a valid {network.family.value} "
            f"address for network {template.network}"
        )


def validate_binding(binding: FacilitatorBinding) -> None:
    get_network(binding.network)
    if not binding.facilitator_url.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Facilitator '{binding.name}' URL must be http(s): {binding.facilitator_url!r}"
        )


class RouteRegistry:
    """Registry of paid routes and the facilitator bound to each."""

    def __init__(self):
        self._routes: Dict[Tuple[str, str], RouteEntry] = {}
        self._frozen = False

    @classmethod
    def build(
        cls,
        entries: Iterable[Tuple[str, str, PaymentRequirementTemplate, FacilitatorBinding]],
    ) -> "RouteRegistry":
        """Register every (method, path, template, binding) and freeze the result."""
        registry = cls()
        for method, path, template, binding in entries:
            registry.register(method, path, template, binding)
        registry.freeze()
        return registry

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True
        logger.info(f"Route registry frozen with {len(self._routes)} paid route(s)")

    def register(
        self,
        method: str,
        path: str,
        template: PaymentRequirementTemplate,
        binding: FacilitatorBinding,
    ) -> RouteEntry:
        """
        Register a paid route.

        Raises:
            ConfigurationError: if the registry is frozen, the entry is invalid,
                the route is not one of the binding's routes, or the route is
                already owned by another binding.
        """
        if self._frozen:
            raise ConfigurationError("Route registry is frozen; routes are registered at startup only")

        key = normalize_route(method, path)
        validate_binding(binding)
        validate_template(template)

        if key not in binding.routes:
            raise ConfigurationError(
                f"Route {key[0]} {key[1]} is not declared by facilitator '{binding.name}'"
            )
        if template.network != binding.network:
            raise ConfigurationError(
                f"Route {key[0]} {key[1]} prices on {template.network} but facilitator "
                f"'{binding.name}' settles on {binding.network}"
            )

        for other in self._routes.values():
            if other.binding.name == binding.name and other.binding != binding:
                raise ConfigurationError(
                    f"Two different facilitator bindings are named '{binding.name}'"
                )

        existing = self._routes.get(key)
        if existing is not None:
            if existing.binding != binding:
                raise ConfigurationError(
                    f"Route {key[0]} {key[1]} is bound to both '{existing.binding.name}' "
                    f"and '{binding.name}'"
                )
            if existing.template != template:
                raise ConfigurationError(
                    f"Route {key[0]} {key[1]} registered twice with different payment terms"
                )
            return existing

        entry = RouteEntry(method=key[0], path=key[1], template=template, binding=binding)
        self._routes[key] = entry
        logger.debug(f"Registered paid route {key[0]} {key[1]} -> {binding.name} ({binding.network})")
        return entry

    def lookup(self, method: str, path: str) -> Optional[RouteEntry]:
        """Return the entry for a route, or None if the route is not paid."""
        return self._routes.get(normalize_route(method, path))

    def entries(self) -> List[RouteEntry]:
        return list(self._routes.values())

    def bindings(self) -> List[FacilitatorBinding]:
        """Distinct bindings that own at least one route, in registration order."""
        seen: Dict[str, FacilitatorBinding] = {}
        for entry in self._routes.values():
            seen.setdefault(entry.binding.name, entry.binding)
        return list(seen.values())

    def __len__(self) -> int:
        return len(self._routes)
