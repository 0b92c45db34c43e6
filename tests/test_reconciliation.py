# tests/test_reconciliation.py
from decimal import Decimal

import pytest

from dtfshop.errors import InsufficientVoucherBalance, InvalidTransition, QuoteNotPriced
from dtfshop.model import Notification, Order, PointTransaction, Voucher
from dtfshop.services import Services
from dtfshop.services.notifications import NotificationDispatcher
from dtfshop.services.reconciliation import voucher_code


def _vouchers_of(db, user):
    return db.session.query(Voucher).filter_by(user_id=user.id, is_template=False).all()


class TestConfirmOrderPayment:
    def test_voucher_purchase_mints_from_template(self, svc, db, customer, voucher_product, make_order):
        order = make_order(customer, items=[(voucher_product, "1", "106.25")], total="106.25",
                           is_voucher_purchase=True)
        result = svc.reconciler.confirm_order_payment(order.id, "pi_123")

        assert result.applied
        assert order.payment_status == "PAID" and order.status == "CONFIRMED"
        assert order.payment_reference == "pi_123"
        [v] = _vouchers_of(db, customer)
        tpl = svc.ledger.template_for_product(voucher_product.id)
        assert v.code == voucher_code(order.order_number, tpl.id, 1)
        assert v.remaining_meters == Decimal("10")
        assert v.remaining_shipments == 2
        assert v.price == Decimal("106.25")
        assert result.points == 132

    def test_duplicate_confirmation_is_noop(self, svc, db, customer, voucher_product, make_order):
        order = make_order(customer, items=[(voucher_product, "1", "106.25")], total="106.25",
                           is_voucher_purchase=True)
        svc.reconciler.confirm_order_payment(order.id, "pi_123")
        again = svc.reconciler.confirm_order_payment(order.id, "pi_123")

        assert not again.applied
        assert len(_vouchers_of(db, customer)) == 1
        assert db.session.query(PointTransaction).filter_by(order_id=order.id).count() == 1

    def test_minting_is_idempotent_even_if_status_is_reset(self, svc, db, customer, voucher_product, make_order):
        order = make_order(customer, items=[(voucher_product, "2", "106.25")], total="212.50",
                           is_voucher_purchase=True)
        svc.reconciler.confirm_order_payment(order.id)
        assert len(_vouchers_of(db, customer)) == 2

        order.payment_status, order.status = "PENDING", "PENDING"
        db.session.commit()
        result = svc.reconciler.confirm_order_payment(order.id)

        assert result.minted == []
        assert len(_vouchers_of(db, customer)) == 2

    def test_voucher_meters_consumed_once(self, svc, db, customer, dtf_product, issue_voucher, make_order):
        v = issue_voucher(customer, "10", shipments=2)
        order = make_order(customer, items=[(dtf_product, "4", "12.50")], total="0",
                           uses_meter_vouchers=True, voucher_meters="4")
        result = svc.reconciler.confirm_order_payment(order.id, source="free")

        assert result.consumption.meters_consumed == Decimal("4")
        assert v.remaining_meters == Decimal("6")
        assert v.remaining_shipments == 1
        assert order.voucher_id == v.id
        assert order.vouchers_consumed_at is not None
        assert order.payment_method == "VOUCHER"

        order.payment_status, order.status = "PENDING", "PENDING"
        db.session.commit()
        svc.reconciler.confirm_order_payment(order.id)
        db.session.refresh(v)
        assert v.remaining_meters == Decimal("6")

    def test_paid_shortfall_is_recorded_not_fatal(self, svc, db, customer, dtf_product, issue_voucher, make_order):
        issue_voucher(customer, "1")
        order = make_order(customer, items=[(dtf_product, "4", "12.50")], total="0",
                           uses_meter_vouchers=True, voucher_meters="4")
        result = svc.reconciler.confirm_order_payment(order.id)
        assert result.applied
        assert any("shortfall" in (h.notes or "") for h in order.history)

    def test_free_confirmation_with_drained_voucher_is_rejected(self, svc, db, customer, dtf_product,
                                                               issue_voucher, make_order):
        v = issue_voucher(customer, "10")
        order = make_order(customer, items=[(dtf_product, "7", "11.00")], total="0",
                           uses_meter_vouchers=True, voucher_meters="7")
        # another order spends the balance between checkout and confirmation
        v.remaining_meters = Decimal("0")
        db.session.commit()

        with pytest.raises(InsufficientVoucherBalance):
            svc.reconciler.confirm_order_payment(order.id, source="free")

        db.session.refresh(order)
        assert order.payment_status == "PENDING"
        assert order.status == "PENDING"
        assert order.vouchers_consumed_at is None
        assert order.points_earned is None
        db.session.refresh(v)
        assert v.remaining_meters == Decimal("0")

    def test_free_confirmation_keeps_partially_drained_balance(self, svc, db, customer, dtf_product,
                                                              issue_voucher, make_order):
        v = issue_voucher(customer, "3", shipments=2)
        order = make_order(customer, items=[(dtf_product, "4", "12.50")], total="0",
                           uses_meter_vouchers=True, voucher_meters="4")

        with pytest.raises(InsufficientVoucherBalance):
            svc.reconciler.confirm_order_payment(order.id, source="free")

        db.session.refresh(v)
        assert v.remaining_meters == Decimal("3")
        assert v.remaining_shipments == 2

    def test_unknown_order_is_ignored(self, svc):
        result = svc.reconciler.confirm_order_payment(999_999)
        assert result.order is None
        assert not result.applied

    def test_guest_voucher_purchase_mints_nothing(self, svc, db, voucher_product, make_order):
        order = make_order(None, items=[(voucher_product, "1", "106.25")], total="106.25",
                           is_voucher_purchase=True)
        result = svc.reconciler.confirm_order_payment(order.id)
        assert result.applied and result.minted == []


class TestFailAndRefund:
    def test_fail_only_from_pending(self, svc, customer, make_order):
        order = make_order(customer, total="20")
        assert svc.reconciler.fail_order_payment(order.id, "FAILED", "card declined").applied
        assert order.payment_status == "FAILED"
        assert not svc.reconciler.fail_order_payment(order.id, "EXPIRED", "late").applied
        assert order.payment_status == "FAILED"

    def test_failed_order_cannot_be_confirmed(self, svc, customer, make_order):
        order = make_order(customer, total="20")
        svc.reconciler.fail_order_payment(order.id, "EXPIRED", "session expired")
        with pytest.raises(InvalidTransition):
            svc.reconciler.confirm_order_payment(order.id)
        assert order.payment_status == "EXPIRED"

    def test_paid_order_is_not_failed(self, svc, customer, make_order):
        order = make_order(customer, total="20")
        svc.reconciler.confirm_order_payment(order.id)
        assert not svc.reconciler.fail_order_payment(order.id, "FAILED", "late failure").applied
        assert order.payment_status == "PAID"

    def test_refund_cancels_and_revokes_points(self, svc, db, customer, make_order):
        order = make_order(customer, total="80", payment_reference="pi_refund")
        svc.reconciler.confirm_order_payment(order.id, "pi_refund")

        result = svc.reconciler.refund_order(payment_reference="pi_refund")

        assert result.applied
        assert order.payment_status == "REFUNDED"
        assert order.status == "CANCELLED"
        assert svc.loyalty.account_for(customer.id).loyalty_points == 0
        assert not svc.reconciler.refund_order(order.id).applied

    def test_refund_of_unpaid_order_ignored(self, svc, customer, make_order):
        order = make_order(customer, total="80")
        assert not svc.reconciler.refund_order(order.id).applied
        assert order.payment_status == "PENDING"


class TestRedeemedPoints:
    def _order_with_points(self, svc, db, customer, make_order):
        acct = svc.loyalty.account_for(customer.id)
        acct.loyalty_points = 300
        db.session.commit()
        order = make_order(customer, total="81.07", points_used=200, points_discount=Decimal("10"))
        return acct, order

    def test_debited_once_on_confirmation(self, svc, db, customer, make_order):
        acct, order = self._order_with_points(svc, db, customer, make_order)
        svc.reconciler.confirm_order_payment(order.id, "pi_pts")
        assert acct.loyalty_points == 300 - 200 + 81

        order.payment_status, order.status = "PENDING", "PENDING"
        db.session.commit()
        svc.reconciler.confirm_order_payment(order.id, "pi_pts")
        assert acct.loyalty_points == 181
        kinds = sorted(t.kind for t in db.session.query(PointTransaction).filter_by(order_id=order.id))
        assert kinds == ["earned", "redeemed"]

    def test_spent_elsewhere_meanwhile_debits_what_is_left(self, svc, db, customer, make_order):
        acct, order = self._order_with_points(svc, db, customer, make_order)
        acct.loyalty_points = 50
        db.session.commit()
        svc.reconciler.confirm_order_payment(order.id, "pi_pts")
        tx = db.session.query(PointTransaction).filter_by(order_id=order.id, kind="redeemed").one()
        assert tx.points == -50
        assert acct.loyalty_points == 81

    def test_refund_returns_redeemed_points(self, svc, db, customer, make_order):
        acct, order = self._order_with_points(svc, db, customer, make_order)
        svc.reconciler.confirm_order_payment(order.id, "pi_pts")
        svc.reconciler.refund_order(order.id)
        assert acct.loyalty_points == 300
        assert not svc.reconciler.refund_order(order.id).applied
        assert acct.loyalty_points == 300


class TestQuoteConversion:
    def test_stripe_payment_converts_once(self, svc, db, customer, priced_quote):
        quote = priced_quote(customer)
        first = svc.reconciler.convert_quote(quote.id, "stripe", "pi_q1")
        second = svc.reconciler.convert_quote(quote.id, "stripe", "pi_q1")
        third = svc.reconciler.mark_quote_paid(quote.id)

        assert first.applied and not second.applied and not third.applied
        assert db.session.query(Order).filter_by(quote_id=quote.id).count() == 1
        db.session.refresh(quote)
        assert quote.status == "PAID"
        assert quote.payment_method == "STRIPE"
        assert quote.order_id == first.order.id
        assert quote.converted_at is not None
        assert first.order.total_price == quote.estimated_total
        assert first.order.payment_status == "PAID"

    def test_unpriced_quote_is_rejected(self, svc, customer, make_quote):
        quote = make_quote(customer)
        with pytest.raises(QuoteNotPriced):
            svc.reconciler.mark_quote_paid(quote.id)

    def test_require_paid_blocks_unpaid_conversion(self, svc, customer, priced_quote):
        quote = priced_quote(customer)
        with pytest.raises(InvalidTransition):
            svc.reconciler.convert_quote(quote.id, "manual", require_paid=True)

    def test_cancelled_quote_cannot_be_paid(self, svc, db, customer, priced_quote):
        quote = priced_quote(customer)
        svc.quotes.close(quote, "CANCELLED")
        db.session.commit()
        with pytest.raises(InvalidTransition):
            svc.reconciler.convert_quote(quote.id, "stripe", "pi_late")

    def test_failure_after_order_creation_rolls_everything_back(self, svc, db, customer, priced_quote, monkeypatch):
        quote = priced_quote(customer)

        def boom(order):
            raise RuntimeError("loyalty store down")

        monkeypatch.setattr(svc.loyalty, "award_for_order", boom)
        with pytest.raises(RuntimeError):
            svc.reconciler.convert_quote(quote.id, "stripe", "pi_q2")

        assert db.session.query(Order).count() == 0
        db.session.refresh(quote)
        assert quote.order_id is None
        assert quote.status == "QUOTED"
        assert svc.reconciler.dispatcher.pending == []

        monkeypatch.undo()
        retry = svc.reconciler.convert_quote(quote.id, "stripe", "pi_q2")
        assert retry.applied
        assert db.session.query(Order).count() == 1

    def test_unknown_quote_is_ignored(self, svc):
        result = svc.reconciler.convert_quote(424242, "stripe")
        assert result.quote is None and not result.applied


class TestPayQuoteWithVoucher:
    def test_insufficient_balance_rejected_before_anything_changes(self, svc, db, customer, issue_voucher,
                                                                   priced_quote):
        v = issue_voucher(customer, "5")
        quote = priced_quote(customer)
        with pytest.raises(InsufficientVoucherBalance):
            svc.reconciler.pay_quote_with_voucher(quote.id)
        db.session.refresh(v)
        db.session.refresh(quote)
        assert v.remaining_meters == Decimal("5")
        assert quote.order_id is None
        assert quote.status == "QUOTED"

    def test_guest_quote_has_no_vouchers(self, svc, priced_quote):
        quote = priced_quote(None)
        with pytest.raises(InsufficientVoucherBalance):
            svc.reconciler.pay_quote_with_voucher(quote.id)

    def test_balance_covers_meters_and_shipping(self, svc, db, customer, issue_voucher, priced_quote):
        v = issue_voucher(customer, "10", shipments=2)
        quote = priced_quote(customer)

        result = svc.reconciler.pay_quote_with_voucher(quote.id)

        order = result.order
        assert result.applied
        assert order.payment_method == "VOUCHER"
        assert order.uses_meter_vouchers
        assert order.voucher_meters == Decimal("7")
        assert order.voucher_id == v.id
        # no extras on this quote: meters covered, shipping credit used
        assert order.subtotal == Decimal("0")
        assert order.shipping_cost == Decimal("0")
        assert order.total_price == Decimal("0")
        assert v.remaining_meters == Decimal("3")
        assert v.remaining_shipments == 1

        again = svc.reconciler.pay_quote_with_voucher(quote.id)
        assert not again.applied
        db.session.refresh(v)
        assert v.remaining_meters == Decimal("3")

    def test_extras_stay_payable(self, svc, db, customer, dtf_product, issue_voucher, make_quote):
        issue_voucher(customer, "10")
        quote = make_quote(customer)
        svc.quotes.price(quote, {"estimated_meters": "7", "needs_cutting": True})
        db.session.commit()

        order = svc.reconciler.pay_quote_with_voucher(quote.id).order

        assert order.subtotal == Decimal("36.40")
        assert order.tax_amount == Decimal("7.64")
        assert order.total_price == Decimal("44.04")


class _BrokenSender:
    def send(self, msg):
        raise ConnectionError("smtp unreachable")


def test_notification_failure_does_not_undo_payment(app, db, customer, make_order):
    svc = Services(db.session, app.config, dispatcher=NotificationDispatcher([_BrokenSender()]))
    order = make_order(customer, total="30")

    result = svc.reconciler.confirm_order_payment(order.id, "pi_n1")

    assert result.applied
    db.session.expire_all()
    assert db.session.get(Order, order.id).payment_status == "PAID"
    assert db.session.query(Notification).count() == 0


def test_in_app_notification_written_after_commit(svc, db, customer, make_order):
    order = make_order(customer, total="30")
    svc.reconciler.confirm_order_payment(order.id)
    notes = db.session.query(Notification).filter_by(user_id=customer.id).all()
    assert [n.kind for n in notes] == ["order_confirmed"]
