# app/x402/catalog.py
"""
Paid route catalog of the merchant server.

Each facilitator owns its own routes and settles on one network:

    payai      GET  /api/weather     $0.001  EVM payee
    heurist    POST /api/ai/image    $0.02   EVM payee
    daydreams  POST /api/agent/task  $0.01   EVM payee
    dexter     POST /api/compute     $0.05   Solana payee
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from app.core.config import Settings
from app.x402.models import FacilitatorBinding, PaymentRequirementTemplate
from app.x402.networks import AddressFamily, get_network, parse_price, usdc_extra
from app.x402.errors import ConfigurationError
from app.x402.registry import RouteRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaidRoute:
    """Human-facing definition of one paid route."""
    facilitator: str
    method: str
    path: str
    price: str
    family: AddressFamily
    description: str


PAID_ROUTES: List[PaidRoute] = [
    PaidRoute("payai", "GET", "/api/weather", "$0.001", AddressFamily.EVM,
              "Get current weather data (PayAI/Base)"),
    PaidRoute("heurist", "POST", "/api/ai/image", "$0.02", AddressFamily.EVM,
              "AI image generation (Heurist/Base)"),
    PaidRoute("daydreams", "POST", "/api/agent/task", "$0.01", AddressFamily.EVM,
              "Agent task execution (Daydreams/Base)"),
    PaidRoute("dexter", "POST", "/api/compute", "$0.05", AddressFamily.SOLANA,
              "Computational service (Dexter/Solana)"),
]


def facilitator_urls(settings: Settings) -> Dict[str, str]:
    return {
        "payai": str(settings.PAYAI_FACILITATOR_URL),
        "heurist": str(settings.HEURIST_FACILITATOR_URL),
        "daydreams": str(settings.DAYDREAMS_FACILITATOR_URL),
        "dexter": str(settings.DEXTER_FACILITATOR_URL),
    }


def _network_for(settings: Settings, family: AddressFamily) -> Tuple[str, str]:
    """(network, payee address) configured for an address family."""
    if family is AddressFamily.EVM:
        network, pay_to = settings.X402_EVM_NETWORK, settings.EVM_ADDRESS
    else:
        network, pay_to = settings.X402_SOLANA_NETWORK, settings.SOLANA_ADDRESS

    if get_network(network).family is not family:
        raise ConfigurationError(
            f"Network '{network}' is not a {family.value} network"
        )
    return network, pay_to


def build_route_entries(
    settings: Settings,
    routes: List[PaidRoute] = PAID_ROUTES,
) -> List[Tuple[str, str, PaymentRequirementTemplate, FacilitatorBinding]]:
    """
    Expand the paid route catalog into registry entries.

    Raises:
        ConfigurationError: on unknown networks, bad prices, or a facilitator
            without a URL.
    """
    urls = facilitator_urls(settings)

    declared: Dict[str, List[PaidRoute]] = {}
    for route in routes:
        declared.setdefault(route.facilitator, []).append(route)

    entries = []
    for name, owned in declared.items():
        url = urls.get(name)
        if not url:
            raise ConfigurationError(f"No URL configured for facilitator '{name}'")

        families = {route.family for route in owned}
        if len(families) != 1:
            raise ConfigurationError(f"Facilitator '{name}' cannot settle on more than one network")
        network, pay_to = _network_for(settings, families.pop())

        binding = FacilitatorBinding(
            name=name,
            facilitator_url=url,
            network=network,
            routes=[(route.method, route.path) for route in owned],
        )
        for route in owned:
            template = PaymentRequirementTemplate(
                network=network,
                asset=get_network(network).usdc_asset,
                pay_to=pay_to,
                price=parse_price(route.price),
                resource_path=route.path,
                description=route.description,
                max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
                extra=usdc_extra(network),
            )
            entries.append((route.method, route.path, template, binding))

    return entries


def build_route_registry(settings: Settings, routes: List[PaidRoute] = PAID_ROUTES) -> RouteRegistry:
    registry = RouteRegistry.build(build_route_entries(settings, routes))
    for binding in registry.bindings():
        logger.info(f"Facilitator {binding.name} ({binding.network}): {binding.facilitator_url}")
    return registry
