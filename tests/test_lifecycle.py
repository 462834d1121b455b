import datetime

import pytest

from agrimarket import lifecycle, matching, models
from agrimarket.errors import InvalidOtp, InvalidTransition, NotAParty
from agrimarket.models import BookingStatus, ItemCategory, PaymentMethod

NOW = datetime.datetime(2025, 7, 15, 12, 0)


@pytest.fixture
def confirmed_booking(db_session, make_item, make_booking):
    item = make_item()
    booking = make_booking()
    matching.accept_booking_request(db_session, booking.id, "supplier-1", item.id)
    return booking


# --- Arrival and OTP ---

def test_mark_as_arrived_issues_otp(db_session, confirmed_booking, outbox):
    booking, otp = lifecycle.mark_as_arrived(db_session, confirmed_booking.id)

    assert booking.status == BookingStatus.ARRIVED
    assert booking.otp_verified is False
    assert len(otp) == 6 and otp.isdigit()
    assert 100000 <= int(otp) <= 999999
    assert otp in outbox(user_id="farmer-1")[-1]["message"]


def test_mark_as_arrived_requires_confirmed(db_session, make_booking):
    booking = make_booking()
    with pytest.raises(InvalidTransition):
        lifecycle.mark_as_arrived(db_session, booking.id)


def test_generated_otps_stay_in_range():
    for _ in range(200):
        assert 100000 <= int(lifecycle.generate_otp()) <= 999999


def test_correct_otp_starts_work_exactly_once(db_session, confirmed_booking, outbox):
    _, otp = lifecycle.mark_as_arrived(db_session, confirmed_booking.id)

    booking = lifecycle.verify_otp_and_start_work(db_session, confirmed_booking.id, otp, now=NOW)

    assert booking.status == BookingStatus.IN_PROCESS
    assert booking.otp_verified is True
    assert booking.work_start_time == NOW
    assert len(outbox(user_id="supplier-1")) == 1
    with pytest.raises(InvalidTransition):
        lifecycle.verify_otp_and_start_work(db_session, confirmed_booking.id, otp)


def test_wrong_otp_is_rejected_and_status_kept(db_session, confirmed_booking):
    _, otp = lifecycle.mark_as_arrived(db_session, confirmed_booking.id)
    wrong = str(int(otp) % 900000 + 100000)

    with pytest.raises(InvalidOtp):
        lifecycle.verify_otp_and_start_work(db_session, confirmed_booking.id, wrong)

    booking = db_session.get(models.Booking, confirmed_booking.id)
    assert booking.status == BookingStatus.ARRIVED
    assert booking.otp_verified is False
    # No lockout: the right code still works afterwards
    assert lifecycle.verify_otp_and_start_work(db_session, booking.id, otp).status == BookingStatus.IN_PROCESS


def test_verify_before_arrival_fails(db_session, confirmed_booking):
    with pytest.raises(InvalidTransition):
        lifecycle.verify_otp_and_start_work(db_session, confirmed_booking.id, "123456")


# --- Completion and payment ---

def start_work(db_session, booking_id):
    _, otp = lifecycle.mark_as_arrived(db_session, booking_id)
    return lifecycle.verify_otp_and_start_work(db_session, booking_id, otp)


def test_complete_moves_to_pending_payment(db_session, confirmed_booking, outbox):
    start_work(db_session, confirmed_booking.id)

    booking = lifecycle.complete_booking(db_session, confirmed_booking.id, now=NOW)

    assert booking.status == BookingStatus.PENDING_PAYMENT
    assert booking.final_price == 1000
    assert booking.payment_details == {
        "farmer_amount": 1000,
        "supplier_amount": 1000,
        "commission": 0,
        "total_amount": 1000,
        "payment_date": NOW.isoformat(),
    }
    assert "Awaiting final payment of ₹1000" in outbox(user_id="supplier-1")[-1]["message"]


def test_complete_paid_upfront_goes_straight_to_completed(db_session, make_booking):
    booking = make_booking(status=BookingStatus.IN_PROCESS, supplier_id="supplier-1",
                           estimated_price=1500, advance_amount=1500, advance_payment_id="adv_123")

    booking = lifecycle.complete_booking(db_session, booking.id)

    assert booking.status == BookingStatus.COMPLETED
    assert booking.final_price == 1500
    assert booking.final_payment_id == "adv_123"


def test_complete_falls_back_to_estimated_price(db_session, make_booking):
    booking = make_booking(status=BookingStatus.IN_PROCESS, estimated_price=800, advance_amount=200)
    assert lifecycle.complete_booking(db_session, booking.id).final_price == 800


def test_complete_requires_work_in_process(db_session, confirmed_booking):
    with pytest.raises(InvalidTransition):
        lifecycle.complete_booking(db_session, confirmed_booking.id)


@pytest.mark.parametrize("method, prefix", [(PaymentMethod.CASH, "cash_"), (PaymentMethod.ONLINE, "final_pay_")])
def test_final_payment_completes_booking(db_session, make_booking, method, prefix):
    booking = make_booking(status=BookingStatus.PENDING_PAYMENT, supplier_id="supplier-1", final_price=900)

    booking = lifecycle.make_final_payment(db_session, booking.id, method=method, now=NOW)

    assert booking.status == BookingStatus.COMPLETED
    assert booking.final_payment_id.startswith(prefix)
    assert booking.payment_method == method
    assert booking.payment_details["method"] == method.value
    assert booking.payment_details["supplier_amount"] == 900


def test_final_payment_requires_pending_payment(db_session, confirmed_booking):
    with pytest.raises(InvalidTransition):
        lifecycle.make_final_payment(db_session, confirmed_booking.id)


def test_payment_spike_alerts_admin(db_session, make_booking, outbox):
    bookings = [make_booking(status=BookingStatus.PENDING_PAYMENT, final_price=100) for _ in range(11)]

    for i, booking in enumerate(bookings[:9]):
        lifecycle.make_final_payment(db_session, booking.id, now=NOW + datetime.timedelta(seconds=30 * i))
    assert outbox(category="admin") == []

    lifecycle.make_final_payment(db_session, bookings[9].id, now=NOW + datetime.timedelta(minutes=5))
    alerts = outbox(category="admin")
    assert len(alerts) == 1
    assert "spike" in alerts[0]["message"]

    # Twenty minutes later the earlier payments are outside the window
    lifecycle.make_final_payment(db_session, bookings[10].id, now=NOW + datetime.timedelta(minutes=20))
    assert len(outbox(category="admin")) == 1


# --- Cancellation ---

def test_cancel_restores_tracked_quantity(db_session, make_item, make_booking):
    item = make_item(category=ItemCategory.WORKERS, purposes=[{"name": "Weeding", "price": 300}],
                     quantity_available=2)
    booking = make_booking(item_category=ItemCategory.WORKERS, work_purpose="Weeding", quantity=2)
    matching.accept_booking_request(db_session, booking.id, "supplier-1", item.id)
    assert item.quantity_available == 0
    assert item.available is False

    cancelled = lifecycle.cancel_booking(db_session, booking.id)

    assert cancelled.status == BookingStatus.CANCELLED
    assert item.quantity_available == 2
    assert item.available is True


def test_cancel_restores_single_unit_availability(db_session, confirmed_booking):
    item = db_session.get(models.Item, confirmed_booking.item_id)
    assert item.available is False

    lifecycle.cancel_booking(db_session, confirmed_booking.id)

    assert item.available is True


def test_cancel_releases_machine_and_driver(db_session, make_item, make_booking):
    machine = make_item()
    driver = make_item(category=ItemCategory.DRIVERS, owner_id="driver-1", purposes=[{"name": "Driving", "price": 150}])
    booking = make_booking(operator_required=True)
    matching.accept_booking_request(db_session, booking.id, "supplier-1", machine.id, operate_self=False)
    matching.accept_booking_request(db_session, booking.id, "driver-1", driver.id)

    lifecycle.cancel_booking(db_session, booking.id)

    assert machine.available is True
    assert driver.available is True


def test_cancel_searching_booking_touches_no_item(db_session, make_item, make_booking):
    item = make_item(quantity_available=3)
    booking = make_booking()

    assert lifecycle.cancel_booking(db_session, booking.id).status == BookingStatus.CANCELLED
    assert item.quantity_available == 3


@pytest.mark.parametrize("status", [BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.EXPIRED])
def test_cancel_terminal_booking_fails(db_session, make_booking, status):
    booking = make_booking(status=status)
    with pytest.raises(InvalidTransition):
        lifecycle.cancel_booking(db_session, booking.id)


# --- Rejection ---

def direct_request(make_booking, make_item, supplier_id="supplier-1"):
    item = make_item(owner_id=supplier_id)
    return make_booking(status=BookingStatus.PENDING_CONFIRMATION, supplier_id=supplier_id, item_id=item.id)


def test_reject_rebroadcasts_request(db_session, make_item, make_booking, outbox):
    booking = direct_request(make_booking, make_item)

    rejected = lifecycle.reject_booking(db_session, booking.id, now=NOW)

    assert rejected.status == BookingStatus.SEARCHING
    assert rejected.is_rebroadcast is True
    assert rejected.supplier_id is None
    assert rejected.item_id is None
    assert "rejected" in outbox(user_id="farmer-1")[-1]["message"]


def test_reject_only_from_pending_confirmation(db_session, make_booking):
    booking = make_booking()
    with pytest.raises(InvalidTransition):
        lifecycle.reject_booking(db_session, booking.id)


def test_reject_by_another_user_is_refused(db_session, make_item, make_booking, outbox):
    booking = direct_request(make_booking, make_item)

    for _ in range(3):
        with pytest.raises(NotAParty):
            lifecycle.reject_booking(db_session, booking.id, now=NOW, actor_id="supplier-2")

    db_session.expire_all()
    assert db_session.get(models.Booking, booking.id).status == BookingStatus.PENDING_CONFIRMATION
    assert db_session.query(models.WindowEvent).count() == 0
    assert outbox(category="admin") == []


def test_reject_by_addressed_supplier(db_session, make_item, make_booking):
    booking = direct_request(make_booking, make_item)

    rejected = lifecycle.reject_booking(db_session, booking.id, now=NOW, actor_id="supplier-1")

    assert rejected.status == BookingStatus.SEARCHING


def test_final_payment_only_by_farmer(db_session, make_booking):
    booking = make_booking(status=BookingStatus.PENDING_PAYMENT, supplier_id="supplier-1", final_price=1000)

    with pytest.raises(NotAParty):
        lifecycle.make_final_payment(db_session, booking.id, now=NOW, actor_id="supplier-1")

    paid = lifecycle.make_final_payment(db_session, booking.id, now=NOW, actor_id="farmer-1")
    assert paid.status == BookingStatus.COMPLETED


def test_driver_counts_as_supplier_side(db_session, make_booking):
    booking = make_booking(status=BookingStatus.CONFIRMED, supplier_id="supplier-1", operator_id="driver-1")

    arrived, _otp = lifecycle.mark_as_arrived(db_session, booking.id, actor_id="driver-1")

    assert arrived.status == BookingStatus.ARRIVED


def test_repeated_rejections_alert_admin(db_session, make_item, make_booking, outbox):
    bookings = [direct_request(make_booking, make_item) for _ in range(4)]

    lifecycle.reject_booking(db_session, bookings[0].id, now=NOW)
    lifecycle.reject_booking(db_session, bookings[1].id, now=NOW + datetime.timedelta(hours=2))
    assert outbox(category="admin") == []

    lifecycle.reject_booking(db_session, bookings[2].id, now=NOW + datetime.timedelta(hours=5))
    assert len(outbox(category="admin")) == 1
    assert "supplier-1" in outbox(category="admin")[0]["message"]

    # Still at or over the threshold inside the window: one more alert
    lifecycle.reject_booking(db_session, bookings[3].id, now=NOW + datetime.timedelta(hours=6))
    assert len(outbox(category="admin")) == 2


def test_rejections_outside_window_do_not_count(db_session, make_item, make_booking, outbox):
    bookings = [direct_request(make_booking, make_item) for _ in range(3)]

    for day, booking in enumerate(bookings):
        lifecycle.reject_booking(db_session, booking.id, now=NOW + datetime.timedelta(hours=25 * day))

    assert outbox(category="admin") == []


def test_rejections_are_counted_per_supplier(db_session, make_item, make_booking, outbox):
    for supplier in ("supplier-1", "supplier-2", "supplier-1", "supplier-2"):
        booking = direct_request(make_booking, make_item, supplier_id=supplier)
        lifecycle.reject_booking(db_session, booking.id, now=NOW)

    assert outbox(category="admin") == []
