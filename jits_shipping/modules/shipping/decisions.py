"""
Shipping decision captured at checkout

An order's stored selection is one of three things:
- NoSelection: the customer picked nothing (or the cost is unknown)
- FreeShipping: a service level with zero cost
- PaidRate: a service level with an explicit price
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from jits_shipping.modules.shipping.repository import OrderSnapshot


@dataclass(frozen=True)
class NoSelection:
    def matches(self, service_level_code: str) -> bool:
        return False

    @property
    def price(self) -> Optional[Decimal]:
        return None


@dataclass(frozen=True)
class FreeShipping:
    service_level_code: str
    service_level_name: str

    def matches(self, service_level_code: str) -> bool:
        return self.service_level_code == service_level_code.strip()

    @property
    def price(self) -> Decimal:
        return Decimal("0")


@dataclass(frozen=True)
class PaidRate:
    service_level_code: str
    service_level_name: str
    amount: Decimal

    def matches(self, service_level_code: str) -> bool:
        return self.service_level_code == service_level_code.strip()

    @property
    def price(self) -> Decimal:
        return self.amount


ShippingDecision = Union[NoSelection, FreeShipping, PaidRate]


def decision_from_order(order: OrderSnapshot) -> ShippingDecision:
    code = (order.service_level_code or "").strip()
    if not code or order.shipping_cost is None:
        return NoSelection()

    name = (order.service_level_name or code).strip()
    cost = Decimal(order.shipping_cost)
    if cost == 0:
        return FreeShipping(service_level_code=code, service_level_name=name)
    return PaidRate(service_level_code=code, service_level_name=name, amount=cost)
