"""External integrations for payment processing."""
from .gateway import GatewayAdapter, GatewayOutcome
from .stripe_gateway import StripeGateway

__all__ = ["GatewayAdapter", "GatewayOutcome", "StripeGateway"]
