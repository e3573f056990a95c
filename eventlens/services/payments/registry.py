from dataclasses import dataclass
from typing import Optional

from eventlens.core.errors import ValidationError
from eventlens.services.payments.common import PaymentProvider
from eventlens.services.payments.paypal_adapter import PayPalAdapter
from eventlens.services.payments.revenuecat_adapter import RevenueCatAdapter
from eventlens.services.payments.stripe_adapter import StripeAdapter
from eventlens.services.pricing import PriceTrustPolicy


@dataclass
class PaymentProviders:
    stripe: StripeAdapter
    paypal: PayPalAdapter
    revenuecat: RevenueCatAdapter

    def get(self, name: Optional[str]) -> PaymentProvider:
        provider = getattr(self, (name or "").lower(), None)
        if not isinstance(provider, PaymentProvider):
            raise ValidationError(f"Unsupported payment method: {name}", violations=["paymentMethod"])
        return provider


def build_providers(settings) -> PaymentProviders:
    """One adapter per provider, all sharing the same trust policy."""
    policy = PriceTrustPolicy.from_settings(settings)
    return PaymentProviders(
        stripe=StripeAdapter(policy=policy),
        paypal=PayPalAdapter(policy=policy),
        revenuecat=RevenueCatAdapter(policy=policy),
    )
