"""
Plan and Credit Pack Catalog

Server-side pricing table. Credit amounts granted by webhooks always come from
here, never from client-supplied metadata.
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional

from core.errors import InvalidPlan


@dataclass(frozen=True)
class PlanSpec:
    """A monthly subscription tier."""
    name: str
    display_name: str
    price_usd: int
    credits: int
    price_id: str

    @property
    def price_cents(self) -> int:
        return self.price_usd * 100

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "price_usd": self.price_usd,
            "credits": self.credits,
            "price_id": self.price_id,
        }


@dataclass(frozen=True)
class CreditPack:
    """A one-time credit purchase."""
    name: str
    price_usd: int
    credits: int
    price_id: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "price_usd": self.price_usd,
            "credits": self.credits,
            "price_id": self.price_id,
        }


# name -> (display name, monthly price in USD, credits per period)
DEFAULT_PLANS = {
    "entry": ("Entry", 24, 15),
    "showcase": ("Showcase", 32, 25),
    "prime": ("Prime", 49, 50),
    "prestige": ("Prestige", 89, 100),
    "portfolio": ("Portfolio", 149, 300),
}

# name -> (price in USD, credits)
DEFAULT_PACKS = {
    "pack_5": (15, 5),
    "pack_10": (27, 10),
    "pack_20": (45, 20),
    "pack_50": (105, 50),
}


class Catalog:
    """
    Lookup of plans and packs by name or processor price id.

    Price ids default to ``price_<name>`` and can be overridden per item with
    ``STRIPE_PRICE_<NAME>`` (e.g. ``STRIPE_PRICE_PRIME``, ``STRIPE_PRICE_PACK_10``).
    """

    def __init__(
        self,
        plans: Optional[Dict[str, PlanSpec]] = None,
        packs: Optional[Dict[str, CreditPack]] = None,
    ):
        self.plans = plans if plans is not None else {
            name: PlanSpec(name, display, price, credits, _price_id(name))
            for name, (display, price, credits) in DEFAULT_PLANS.items()
        }
        self.packs = packs if packs is not None else {
            name: CreditPack(name, price, credits, _price_id(name))
            for name, (price, credits) in DEFAULT_PACKS.items()
        }

    def plan(self, name: str) -> PlanSpec:
        """Get a plan by name or raise ``InvalidPlan``."""
        spec = self.plans.get((name or "").lower())
        if spec is None:
            raise InvalidPlan(f"Unknown plan: {name}", plan=name)
        return spec

    def pack(self, name: str) -> CreditPack:
        spec = self.packs.get((name or "").lower())
        if spec is None:
            raise InvalidPlan(f"Unknown credit pack: {name}", pack=name)
        return spec

    def plan_for_price(self, price_id: Optional[str]) -> Optional[PlanSpec]:
        for spec in self.plans.values():
            if spec.price_id == price_id:
                return spec
        return None

    def compare(self, current: str, requested: str) -> int:
        """-1 if ``requested`` is a lower tier than ``current``, 1 if higher, 0 if equal."""
        a = self.plan(current).price_usd
        b = self.plan(requested).price_usd
        return (b > a) - (b < a)

    def to_dict(self) -> Dict[str, object]:
        return {
            "plans": [p.to_dict() for p in sorted(self.plans.values(), key=lambda p: p.price_usd)],
            "packs": [p.to_dict() for p in sorted(self.packs.values(), key=lambda p: p.price_usd)],
        }


def _price_id(name: str) -> str:
    return os.environ.get(f"STRIPE_PRICE_{name.upper()}", f"price_{name}")
