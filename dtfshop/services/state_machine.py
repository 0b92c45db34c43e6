# dtfshop/services/state_machine.py
from ..errors import InvalidTransition

ORDER_PAYMENT_TRANSITIONS = {
    "PENDING": {"PAID", "FAILED", "EXPIRED"},
    "PAID": {"REFUNDED"},
    "FAILED": set(),
    "EXPIRED": set(),
    "REFUNDED": set(),
}

ORDER_TRANSITIONS = {
    "PENDING": {"CONFIRMED", "CANCELLED"},
    "CONFIRMED": {"CANCELLED"},
    "CANCELLED": set(),
}

QUOTE_TRANSITIONS = {
    "PENDING_REVIEW": {"QUOTED", "CANCELLED", "EXPIRED"},
    "QUOTED": {"QUOTED", "PAYMENT_SENT", "PAID", "CANCELLED", "EXPIRED"},
    "PAYMENT_SENT": {"PAYMENT_SENT", "PAID", "CANCELLED", "EXPIRED"},
    "PAID": set(),
    "CANCELLED": set(),
    "EXPIRED": set(),
}

QUOTE_OPEN = ("PENDING_REVIEW", "QUOTED", "PAYMENT_SENT")


def can_transition(table, current, target) -> bool:
    return target in table.get(current, set())


def ensure_transition(table, current, target, what="record"):
    if not can_transition(table, current, target):
        raise InvalidTransition(
            f"{what} cannot go from {current} to {target}",
            {"from": current, "to": target},
        )
