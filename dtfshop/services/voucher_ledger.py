# dtfshop/services/voucher_ledger.py
"""
Voucher ledger: balances, FIFO selection and guarded decrement of prepaid
meters / free shipments.

Every decrement is a compare-and-swap on `Voucher.version`. A lost race
rolls back to a savepoint, re-reads the queue and tries once more; a second
loss surfaces BalanceChangedError to the caller.
"""
from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from sqlalchemy import select, text, update
from sqlalchemy.exc import OperationalError

from ..errors import BalanceChangedError
from ..model import Voucher
from ..utils.clock import utcnow
from ..utils.money import D, Money, ZERO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Balance:
    meters: Money
    shipments: int

    def as_api(self):
        return {"meters": float(self.meters), "shipments": self.shipments}


@dataclass(frozen=True)
class Allocation:
    meters_needed: Money
    meters_available: Money
    meters_from_voucher: Money
    meters_to_pay: Money

    @property
    def full(self) -> bool:
        return self.meters_needed > ZERO and self.meters_to_pay == ZERO

    @property
    def partial(self) -> bool:
        return self.meters_from_voucher > ZERO and self.meters_to_pay > ZERO

    @property
    def covered(self) -> bool:
        return self.meters_from_voucher > ZERO


def allocate(meters_needed, meters_available) -> Allocation:
    """Split needed meters into voucher-covered and cash-payable parts."""
    needed = D(meters_needed)
    available = max(D(meters_available), ZERO)
    if needed <= ZERO:
        return Allocation(ZERO, available, ZERO, ZERO)
    from_voucher = min(needed, available)
    return Allocation(needed, available, from_voucher, needed - from_voucher)


class VoucherQueue:
    """
    Consumption order for a user's vouchers: oldest `created_at` first, id as
    tie-breaker. Iterating pops from a heap, so the order is a property of the
    queue rather than of whatever query produced the rows.
    """

    def __init__(self, vouchers=()):
        self._heap = []
        for v in vouchers:
            self.push(v)

    def push(self, voucher):
        heapq.heappush(self._heap, (voucher.created_at, voucher.id, voucher))

    def __len__(self):
        return len(self._heap)

    def __bool__(self):
        return bool(self._heap)

    def __iter__(self):
        heap = list(self._heap)
        while heap:
            yield heapq.heappop(heap)[2]

    @property
    def total_meters(self) -> Money:
        return sum((D(v.remaining_meters) for _, _, v in self._heap), ZERO)


@dataclass
class Deduction:
    voucher_id: int
    code: str
    meters: Money
    shipments: int


@dataclass
class Consumption:
    meters_requested: Money
    meters_consumed: Money = ZERO
    shipments_consumed: int = 0
    deductions: list[Deduction] = field(default_factory=list)

    @property
    def first_voucher_id(self):
        return self.deductions[0].voucher_id if self.deductions else None

    def as_api(self):
        return {
            "meters_requested": float(self.meters_requested),
            "meters_consumed": float(self.meters_consumed),
            "shipments_consumed": self.shipments_consumed,
            "vouchers": [
                {"id": d.voucher_id, "code": d.code, "meters": float(d.meters), "shipments": d.shipments}
                for d in self.deductions
            ],
        }


class _Conflict(Exception):
    def __init__(self, voucher_id):
        super().__init__(voucher_id)
        self.voucher_id = voucher_id


class VoucherLedger:
    def __init__(self, session, lock_timeout_ms: int = 3000, clock=utcnow):
        self.session = session
        self.lock_timeout_ms = lock_timeout_ms
        self.clock = clock

    # ---- queries ----------------------------------------------------------
    def _eligible(self, user_id):
        now = self.clock()
        return (
            select(Voucher)
            .where(
                Voucher.user_id == user_id,
                Voucher.is_template.is_(False),
                Voucher.is_active.is_(True),
                (Voucher.expires_at.is_(None)) | (Voucher.expires_at > now),
            )
        )

    def available_balance(self, user_id) -> Balance:
        if user_id is None:
            return Balance(ZERO, 0)
        rows = self.session.scalars(self._eligible(user_id)).all()
        return Balance(
            meters=sum((D(v.remaining_meters) for v in rows), ZERO),
            shipments=sum(v.remaining_shipments for v in rows),
        )

    def select_for_consumption(self, user_id, lock: bool = False) -> VoucherQueue:
        if user_id is None:
            return VoucherQueue()
        stmt = (
            self._eligible(user_id)
            .where(Voucher.remaining_meters > 0)
            .execution_options(populate_existing=True)
        )
        if lock:
            self._set_lock_timeout()
            stmt = stmt.with_for_update()
        try:
            rows = self.session.scalars(stmt).all()
        except OperationalError as e:
            # lock_timeout expired while another checkout held the rows
            raise BalanceChangedError("voucher balance is being updated, retry") from e
        return VoucherQueue(rows)

    def allocate(self, user_id, meters_needed) -> Allocation:
        return allocate(meters_needed, self.select_for_consumption(user_id).total_meters)

    def list_templates(self):
        return self.session.scalars(
            select(Voucher).where(Voucher.is_template.is_(True)).order_by(Voucher.price.asc())
        ).all()

    def template_for_product(self, product_id):
        return self.session.scalars(
            select(Voucher).where(Voucher.product_id == product_id, Voucher.is_template.is_(True))
        ).first()

    # ---- mutation ---------------------------------------------------------
    def consume(self, order, meters_needed, shipments_needed: int = 1) -> Consumption:
        """
        Deduct meters (and shipment credits) FIFO for `order.user_id`.
        Records the first touched voucher on the order unless one is already set.
        """
        for attempt in (1, 2):
            try:
                with self.session.begin_nested():
                    result = self._consume_once(order.user_id, D(meters_needed), shipments_needed)
            except _Conflict as c:
                logger.warning("voucher %s changed during consumption for order %s (attempt %d)",
                               c.voucher_id, order.order_number, attempt)
                continue
            if result.first_voucher_id is not None and order.voucher_id is None:
                order.voucher_id = result.first_voucher_id
            return result
        raise BalanceChangedError("voucher balance changed, retry", {"order": order.order_number})

    def _consume_once(self, user_id, meters_needed: Money, shipments_needed: int) -> Consumption:
        queue = self.select_for_consumption(user_id, lock=True)
        result = Consumption(meters_requested=meters_needed)
        meters_left = meters_needed
        shipments_left = shipments_needed
        now = self.clock()

        for v in queue:
            if meters_left <= ZERO and shipments_left <= 0:
                break
            have_m = D(v.remaining_meters)
            take_m = min(have_m, meters_left) if meters_left > ZERO else ZERO
            # shipment credit is taken even from a voucher that gives no meters
            take_s = min(v.remaining_shipments, shipments_left) if shipments_left > 0 else 0
            if take_m <= ZERO and take_s <= 0:
                continue

            new_m = have_m - take_m
            new_s = v.remaining_shipments - take_s
            res = self.session.execute(
                update(Voucher)
                .where(Voucher.id == v.id, Voucher.version == v.version)
                .values(
                    remaining_meters=new_m,
                    remaining_shipments=new_s,
                    usage_count=v.usage_count + 1,
                    is_active=v.should_be_active(new_m, new_s, now),
                    version=v.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise _Conflict(v.id)
            self.session.refresh(v)

            meters_left -= take_m
            shipments_left -= take_s
            result.meters_consumed += take_m
            result.shipments_consumed += take_s
            result.deductions.append(Deduction(v.id, v.code, take_m, take_s))
            logger.info("voucher %s: -%sm -%s shipment(s), left %sm/%s",
                        v.code, take_m, take_s, new_m, new_s)
        return result

    def _set_lock_timeout(self):
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            # SET LOCAL is scoped to the current transaction
            self.session.execute(text(f"SET LOCAL lock_timeout = {int(self.lock_timeout_ms)}"))

    # ---- maintenance ------------------------------------------------------
    def deactivate_expired(self) -> int:
        now = self.clock()
        res = self.session.execute(
            update(Voucher)
            .where(
                Voucher.is_template.is_(False),
                Voucher.is_active.is_(True),
                Voucher.expires_at.is_not(None),
                Voucher.expires_at <= now,
            )
            .values(is_active=False, version=Voucher.version + 1)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    def expiring_between(self, start, end):
        return self.session.scalars(
            select(Voucher).where(
                Voucher.is_template.is_(False),
                Voucher.is_active.is_(True),
                Voucher.user_id.is_not(None),
                Voucher.expires_at >= start,
                Voucher.expires_at < end,
            )
        ).all()
