"""Payment gateway factory.

The only place that knows which providers exist and which are enabled.
No business logic here - only gateway selection and configuration lookup.
"""

import logging
from collections.abc import Callable

from merchant_billing.config import Settings, settings
from merchant_billing.core.exceptions import UnsupportedGatewayError
from merchant_billing.gateways.base import GatewayType, PaymentGateway
from merchant_billing.gateways.payfast import PayFastGateway
from merchant_billing.gateways.stcpay import StcPayGateway
from merchant_billing.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

GatewayBuilder = Callable[[Settings], PaymentGateway]

DEFAULT_BUILDERS: dict[GatewayType, GatewayBuilder] = {
    GatewayType.STRIPE: StripeGateway,
    GatewayType.PAYFAST: PayFastGateway,
    GatewayType.STCPAY: StcPayGateway,
}


def _enabled_flags(config: Settings) -> dict[GatewayType, bool]:
    return {
        GatewayType.STRIPE: config.enable_stripe_gateway,
        GatewayType.PAYFAST: config.enable_payfast_gateway,
        GatewayType.STCPAY: config.enable_stcpay_gateway,
    }


def _webhook_secrets(config: Settings) -> dict[GatewayType, str | None]:
    return {
        GatewayType.STRIPE: config.stripe_webhook_secret,
        # PayFast signs ITNs with the merchant passphrase
        GatewayType.PAYFAST: config.payfast_passphrase,
        GatewayType.STCPAY: config.stcpay_webhook_secret,
    }


def parse_gateway_type(gateway: str | GatewayType) -> GatewayType:
    """Resolve an identifier to a ``GatewayType``.

    Raises:
        UnsupportedGatewayError: If the identifier is unknown
    """
    if isinstance(gateway, GatewayType):
        return gateway
    try:
        return GatewayType(str(gateway).lower())
    except ValueError:
        logger.error(f"Unsupported gateway identifier requested: {gateway}")
        raise UnsupportedGatewayError(str(gateway))


class GatewayService:
    """Selects enabled gateway adapters and exposes their webhook secrets."""

    def __init__(
        self,
        config: Settings | None = None,
        builders: dict[GatewayType, GatewayBuilder] | None = None,
    ):
        self.config = config or settings
        self._builders = builders or DEFAULT_BUILDERS
        self._gateways: dict[GatewayType, PaymentGateway] = {}

    def is_enabled(self, gateway: str | GatewayType) -> bool:
        try:
            gateway_type = parse_gateway_type(gateway)
        except UnsupportedGatewayError:
            return False
        return _enabled_flags(self.config).get(gateway_type, False) and gateway_type in self._builders

    def get_gateway(self, gateway: str | GatewayType) -> PaymentGateway:
        """Return the adapter for an implemented and enabled provider.

        Raises:
            UnsupportedGatewayError: If the provider is unknown or disabled
        """
        gateway_type = parse_gateway_type(gateway)

        if not _enabled_flags(self.config).get(gateway_type, False):
            logger.warning(f"Attempted to use {gateway_type.value} gateway, but it is disabled in configuration")
            raise UnsupportedGatewayError(gateway_type.value)

        if gateway_type not in self._gateways:
            builder = self._builders.get(gateway_type)
            if builder is None:
                raise UnsupportedGatewayError(gateway_type.value)
            self._gateways[gateway_type] = builder(self.config)

        return self._gateways[gateway_type]

    def get_webhook_secret(self, gateway: str | GatewayType) -> str | None:
        """Webhook secret for the provider, or None when not configured."""
        gateway_type = parse_gateway_type(gateway)
        secret = _webhook_secrets(self.config).get(gateway_type)
        if not secret:
            logger.warning(f"Webhook secret for {gateway_type.value} is not configured")
            return None
        return secret


# Singleton instance
gateway_service = GatewayService()
