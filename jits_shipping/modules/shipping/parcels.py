"""
Parcel estimation

Items are packed in order into parcels of at most max_items_per_parcel
units. Length and width are fixed; height and weight grow with the unit
count and are floored so no parcel is ever zero-sized.
"""
import math
from typing import Iterable, List, Optional

from jits_shipping.core.config import ShippingConfig
from jits_shipping.core.exceptions import InvalidOrderError
from jits_shipping.modules.shipping.carriers.base import Parcel
from jits_shipping.modules.shipping.repository import OrderLine

DEFAULT_PARCEL_DESCRIPTION = "Apparel"


def default_parcel(config: Optional[ShippingConfig] = None) -> Parcel:
    """Single parcel used for ad-hoc quotes without parcel details."""
    config = config or ShippingConfig()
    return Parcel(
        length_cm=config.base_length_cm,
        width_cm=config.base_width_cm,
        height_cm=config.min_height_cm,
        weight_kg=config.min_weight_kg,
        description=DEFAULT_PARCEL_DESCRIPTION,
    )


class ParcelEstimator:
    def __init__(self, config: Optional[ShippingConfig] = None):
        self.config = config or ShippingConfig()

    def total_units(self, lines: Iterable[OrderLine], order_id: Optional[int] = None) -> int:
        total = 0
        count = 0
        for line in lines:
            count += 1
            if not isinstance(line.quantity, int) or isinstance(line.quantity, bool) or line.quantity <= 0:
                raise InvalidOrderError(
                    f"Line item '{line.product_name}' has invalid quantity {line.quantity!r}",
                    order_id=order_id,
                )
            total += line.quantity
        if count == 0:
            raise InvalidOrderError("Order has no line items", order_id=order_id)
        return total

    def parcel_for(self, units: int) -> Parcel:
        cfg = self.config
        height = max(cfg.min_height_cm, min(cfg.max_height_cm, cfg.height_per_item_cm * units))
        weight = max(cfg.min_weight_kg, round(cfg.weight_per_item_kg * units, 3))
        return Parcel(
            length_cm=cfg.base_length_cm,
            width_cm=cfg.base_width_cm,
            height_cm=height,
            weight_kg=weight,
            description=f"Jits Apparel ({units} items)",
        )

    def split_units(self, total: int) -> List[int]:
        """Unit count per parcel, e.g. 23 -> [10, 10, 3]."""
        per_parcel = self.config.max_items_per_parcel
        count = math.ceil(total / per_parcel)
        return [min(per_parcel, total - i * per_parcel) for i in range(count)]

    def estimate(self, lines: Iterable[OrderLine], order_id: Optional[int] = None) -> List[Parcel]:
        total = self.total_units(lines, order_id=order_id)
        return [self.parcel_for(units) for units in self.split_units(total)]
