"""Gateway selection by configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from ..config import SandboxGatewayConfig, StripeGatewayConfig
from ..errors import ConfigError
from .sandbox import SandboxGateway
from .stripe_gateway import StripeGateway

if TYPE_CHECKING:
    from .gateway_protocol import PaymentGateway

# Gateway kind -> factory taking the validated config section
_GATEWAY_FACTORIES: dict[str, Callable[[Any], PaymentGateway]] = {
    "sandbox": SandboxGateway,
    "stripe": StripeGateway,
}


def create_gateway(config: SandboxGatewayConfig | StripeGatewayConfig) -> PaymentGateway:
    """Build the gateway implementation named by ``config.kind``.

    Raises:
        ConfigError: If no implementation exists for the kind.
    """
    factory = _GATEWAY_FACTORIES.get(config.kind)
    if factory is None:
        raise ConfigError("payments", [f"unsupported gateway kind '{config.kind}'"])
    return factory(config)


def supported_gateways() -> list[str]:
    return sorted(_GATEWAY_FACTORIES.keys())
