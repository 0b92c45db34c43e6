# dtfshop/services/extras.py
"""
Per-item production extras and the global prioritization surcharge.

Customizations arrive as loose JSON from the storefront; `parse_extras`
turns them into one of Layout | Cutting | Prioritize | Combination and
rejects anything else with ValueError.
"""
from __future__ import annotations

from dataclasses import dataclass

from ..utils.money import D, Money, ZERO, floor_int

MAX_TABLE_METERS = 50

# Bounded lookup tables keyed by whole meters 1..50.
PRIORITIZE_PRICES = {m: max(D("4.5"), D("1.5") * (m - 1)) for m in range(1, MAX_TABLE_METERS + 1)}
LAYOUT_PRICES = {m: D("6") + D("1.5") * m for m in range(1, MAX_TABLE_METERS + 1)}
CUTTING_PRICES = {m: D("5.2") * m for m in range(1, MAX_TABLE_METERS + 1)}


def _table_key(meters) -> int:
    m = floor_int(meters)
    if m < 1:
        return 1
    return min(m, MAX_TABLE_METERS)


def prioritization_surcharge(total_meters) -> Money:
    """Flat fee for the whole cart, looked up on floored total meters."""
    if D(total_meters) <= ZERO:
        return ZERO
    return PRIORITIZE_PRICES[_table_key(total_meters)]


def layout_price(meters) -> Money:
    return LAYOUT_PRICES[_table_key(meters)]


def cutting_price(meters) -> Money:
    return CUTTING_PRICES[_table_key(meters)]


class Extra:
    kind = "none"

    def item_price(self, meters) -> Money:
        return ZERO

    @property
    def wants_priority(self) -> bool:
        return False

    def kinds(self) -> tuple[str, ...]:
        return (self.kind,)

    def as_json(self) -> dict:
        return {"extras": {k: True for k in self.kinds()}}


@dataclass(frozen=True)
class Layout(Extra):
    kind = "layout"

    def item_price(self, meters) -> Money:
        return layout_price(meters)


@dataclass(frozen=True)
class Cutting(Extra):
    kind = "cutting"

    def item_price(self, meters) -> Money:
        return cutting_price(meters)


@dataclass(frozen=True)
class Prioritize(Extra):
    """Per-item flag only; the fee is charged once per cart."""
    kind = "prioritize"

    @property
    def wants_priority(self) -> bool:
        return True


@dataclass(frozen=True)
class Combination(Extra):
    parts: tuple[Extra, ...] = ()
    kind = "combination"

    def item_price(self, meters) -> Money:
        return sum((p.item_price(meters) for p in self.parts), ZERO)

    @property
    def wants_priority(self) -> bool:
        return any(p.wants_priority for p in self.parts)

    def kinds(self) -> tuple[str, ...]:
        return tuple(p.kind for p in self.parts)


_BY_KIND = {"layout": Layout, "cutting": Cutting, "prioritize": Prioritize}


def _selected(value) -> bool:
    # storefront sends either `true` or {"selected": true, "price": ...}
    if isinstance(value, dict):
        return bool(value.get("selected", True))
    return bool(value)


def parse_extras(raw) -> Extra | None:
    if raw is None:
        return None
    if isinstance(raw, Extra):
        return raw
    if not isinstance(raw, dict | list | tuple):
        raise ValueError("customizations must be an object")

    if isinstance(raw, dict):
        unknown_top = set(raw) - {"extras", "extrasTotal", "notes"}
        if unknown_top:
            raise ValueError(f"unknown customization keys: {', '.join(sorted(unknown_top))}")
        extras = raw.get("extras")
    else:
        extras = raw

    if extras is None:
        return None
    if isinstance(extras, dict):
        names = [k for k, v in extras.items() if v is not None and _selected(v)]
        bad = [k for k in extras if k not in _BY_KIND]
    elif isinstance(extras, list | tuple):
        names = [str(k) for k in extras]
        bad = [k for k in names if k not in _BY_KIND]
    else:
        raise ValueError("extras must be an object or a list")
    if bad:
        raise ValueError(f"unknown extras: {', '.join(sorted(map(str, bad)))}")

    # stable order, no duplicates
    parts = tuple(_BY_KIND[k]() for k in ("layout", "cutting", "prioritize") if k in names)
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return Combination(parts=parts)
