"""
배송비 견적

택배사/서비스별 고정 요금표(settings.shipping_rates)를 사용합니다.
택배사 또는 서비스가 비어 있거나 요금표에 없으면 0원입니다.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from blindbid.settings import settings


@dataclass(frozen=True)
class ShippingQuote:
    price: Decimal
    currency: str
    provider: str = "static"


def get_quote(
    courier: str | None,
    courier_service: str | None,
    rates: dict[str, dict[str, float]] | None = None,
) -> ShippingQuote:
    rates = settings.shipping_rates if rates is None else rates
    if not courier or not courier_service:
        return ShippingQuote(price=Decimal("0"), currency=settings.payment_currency)

    price = (rates.get(courier) or {}).get(courier_service) or 0
    return ShippingQuote(price=Decimal(str(price)), currency=settings.payment_currency)
