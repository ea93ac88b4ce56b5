"""Tests for the in-memory booking store."""

from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from medcore.models import BookingDraft, BookingStatus, UserDetails
from medcore.services.booking_store import (
    BASE_SCHEDULE,
    BookingStore,
    InvalidTransitionError,
    ServiceNotFoundError,
    SlotUnavailableError,
)

DAY = dt.date(2030, 3, 14)
OTHER_DAY = dt.date(2030, 3, 15)


def _draft(time: str = "10:00 AM", date: dt.date = DAY, service_id: str = "s1") -> BookingDraft:
    return BookingDraft(
        service_id=service_id,
        date=date,
        time=time,
        user_details=UserDetails(name="Kavya", email="kavya@mail.com", phone="+919876543210"),
    )


class TestCatalog:
    @pytest.mark.asyncio
    async def test_lists_three_services(self, store):
        services = await store.list_services()
        assert [s.id for s in services] == ["s1", "s2", "s3"]
        assert services[0].name == "General Consultation"
        assert services[1].price == 120

    @pytest.mark.asyncio
    async def test_unknown_service_raises(self, store):
        with pytest.raises(ServiceNotFoundError):
            await store.get_service("s99")

    @pytest.mark.asyncio
    async def test_returned_services_are_copies(self, store):
        services = await store.list_services()
        services[0].price = 0
        assert (await store.get_service("s1")).price == 50


class TestAvailability:
    @pytest.mark.asyncio
    async def test_full_ratio_offers_base_schedule(self, store):
        slots = await store.get_availability(DAY, "s1")
        assert [s.time for s in slots] == list(BASE_SCHEDULE)
        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_partial_ratio_is_deterministic(self):
        store = BookingStore(latency_ms=0, availability_ratio=0.7, seed=False)
        first = await store.get_availability(DAY, "s2")
        second = await store.get_availability(DAY, "s2")
        assert [s.time for s in first] == [s.time for s in second]
        assert set(s.time for s in first) <= set(BASE_SCHEDULE)

    @pytest.mark.asyncio
    async def test_zero_ratio_offers_nothing(self):
        store = BookingStore(latency_ms=0, availability_ratio=0.0, seed=False)
        assert await store.get_availability(DAY, "s1") == []

    @pytest.mark.asyncio
    async def test_confirmed_booking_holds_its_slot(self, store):
        await store.create_booking(_draft("10:00 AM"))
        times = [s.time for s in await store.get_availability(DAY, "s1")]
        assert "10:00 AM" not in times
        # Same time on another service is unaffected
        other = [s.time for s in await store.get_availability(DAY, "s2")]
        assert "10:00 AM" in other

    @pytest.mark.asyncio
    async def test_unknown_service_raises(self, store):
        with pytest.raises(ServiceNotFoundError):
            await store.get_availability(DAY, "nope")


class TestOtp:
    @pytest.mark.asyncio
    async def test_demo_code_accepted_for_any_phone(self, store):
        assert await store.verify_otp("+15550000", "123456") is True
        assert await store.verify_otp("+447700900123", "123456") is True

    @pytest.mark.asyncio
    async def test_code_with_accepted_suffix_passes(self, store):
        assert await store.verify_otp("+15550000", "999996") is True

    @pytest.mark.asyncio
    async def test_code_without_suffix_fails(self, store):
        assert await store.verify_otp("+15550000", "123455") is False

    @pytest.mark.asyncio
    async def test_empty_code_fails(self, store):
        assert await store.verify_otp("+15550000", "") is False

    @pytest.mark.asyncio
    async def test_issue_then_verify_consumes_challenge(self, store):
        challenge = await store.issue_otp("+1 (555) 000-1")
        assert challenge.phone == "+15550001"
        assert challenge.expires_at > challenge.issued_at
        assert await store.verify_otp("+15550001", "123456") is True
        assert "+15550001" not in store._otps

    @pytest.mark.asyncio
    async def test_expired_challenge_fails(self, store):
        await store.issue_otp("+15550002")
        store._otps["+15550002"].expires_at = dt.datetime.now(dt.UTC) - dt.timedelta(seconds=1)
        assert await store.verify_otp("+15550002", "123456") is False

    @pytest.mark.asyncio
    async def test_challenge_locks_after_max_attempts(self, store):
        await store.issue_otp("+15550003")
        for _ in range(5):
            assert await store.verify_otp("+15550003", "000000") is False
        assert await store.verify_otp("+15550003", "123456") is False


class TestCreateBooking:
    @pytest.mark.asyncio
    async def test_creates_confirmed_booking(self, store):
        booking = await store.create_booking(_draft())
        assert booking.status is BookingStatus.CONFIRMED
        assert booking.service_name == "General Consultation"
        assert booking.id.startswith("b")
        assert (await store.get_booking(booking.id)).status is BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_time_is_normalised(self, store):
        booking = await store.create_booking(_draft("2pm"))
        assert booking.time == "02:00 PM"

    @pytest.mark.asyncio
    async def test_same_idempotency_key_returns_original(self, store):
        before = len(await store.list_all())
        first = await store.create_booking(_draft(), idempotency_key="key-1")
        second = await store.create_booking(_draft(), idempotency_key="key-1")
        assert first.id == second.id
        assert len(await store.list_all()) == before + 1

    @pytest.mark.asyncio
    async def test_reused_key_for_other_request_books_anew(self, store):
        first = await store.create_booking(_draft("10:00 AM"), idempotency_key="shared")
        second = await store.create_booking(_draft("02:00 PM"), idempotency_key="shared")
        assert second.id != first.id
        assert second.time == "02:00 PM"
        assert (await store.get_booking(first.id)).status is BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_held_slot_raises(self, store):
        await store.create_booking(_draft("11:00 AM"))
        with pytest.raises(SlotUnavailableError):
            await store.create_booking(_draft("11:00 AM"))

    @pytest.mark.asyncio
    async def test_slot_not_offered_raises(self, store):
        with pytest.raises(SlotUnavailableError):
            await store.create_booking(_draft("07:00 AM"))

    @pytest.mark.asyncio
    async def test_unknown_service_raises(self, store):
        with pytest.raises(ServiceNotFoundError):
            await store.create_booking(_draft(service_id="s42"))

    @pytest.mark.asyncio
    async def test_concurrent_creates_for_one_slot_book_once(self, store):
        results = await asyncio.gather(
            store.create_booking(_draft("01:00 PM")),
            store.create_booking(_draft("01:00 PM")),
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, SlotUnavailableError)]
        assert len(created) == 1
        assert len(failed) == 1


class TestCancelBooking:
    @pytest.mark.asyncio
    async def test_cancel_frees_slot(self, store):
        booking = await store.create_booking(_draft("09:30 AM"))
        assert await store.cancel_booking(booking.id) is True
        assert (await store.get_booking(booking.id)).status is BookingStatus.CANCELLED
        times = [s.time for s in await store.get_availability(DAY, "s1")]
        assert "09:30 AM" in times

    @pytest.mark.asyncio
    async def test_second_cancel_is_a_no_op(self, store):
        booking = await store.create_booking(_draft())
        await store.cancel_booking(booking.id)
        assert await store.cancel_booking(booking.id) is True

    @pytest.mark.asyncio
    async def test_unknown_id_returns_false(self, store):
        assert await store.cancel_booking("missing") is False

    @pytest.mark.asyncio
    async def test_key_released_after_cancel(self, store):
        first = await store.create_booking(_draft(), idempotency_key="again")
        await store.cancel_booking(first.id)
        second = await store.create_booking(_draft(), idempotency_key="again")
        assert second.id != first.id
        assert second.status is BookingStatus.CONFIRMED


class TestRescheduleBooking:
    @pytest.mark.asyncio
    async def test_keeps_id_and_status(self, store):
        booking = await store.create_booking(_draft("10:00 AM"))
        moved = await store.reschedule_booking(booking.id, OTHER_DAY, "02:00 PM")
        assert moved.id == booking.id
        assert moved.status is BookingStatus.CONFIRMED
        assert (moved.date, moved.time) == (OTHER_DAY, "02:00 PM")

    @pytest.mark.asyncio
    async def test_old_slot_is_released(self, store):
        booking = await store.create_booking(_draft("10:00 AM"))
        await store.reschedule_booking(booking.id, DAY, "10:30 AM")
        times = [s.time for s in await store.get_availability(DAY, "s1")]
        assert "10:00 AM" in times
        assert "10:30 AM" not in times

    @pytest.mark.asyncio
    async def test_same_slot_is_idempotent(self, store):
        booking = await store.create_booking(_draft("10:00 AM"))
        again = await store.reschedule_booking(booking.id, DAY, "10am")
        assert again.id == booking.id
        assert again.time == "10:00 AM"

    @pytest.mark.asyncio
    async def test_unknown_id_returns_none(self, store):
        assert await store.reschedule_booking("missing", DAY, "10:00 AM") is None

    @pytest.mark.asyncio
    async def test_cancelled_booking_cannot_move(self, store):
        booking = await store.create_booking(_draft())
        await store.cancel_booking(booking.id)
        with pytest.raises(InvalidTransitionError):
            await store.reschedule_booking(booking.id, OTHER_DAY, "10:00 AM")

    @pytest.mark.asyncio
    async def test_onto_held_slot_raises(self, store):
        a = await store.create_booking(_draft("10:00 AM"))
        await store.create_booking(_draft("11:00 AM"))
        with pytest.raises(SlotUnavailableError):
            await store.reschedule_booking(a.id, DAY, "11:00 AM")


class TestLookups:
    @pytest.mark.asyncio
    async def test_seed_booking_is_found_by_email(self, store):
        found = await store.find_bookings("JOHN@example")
        assert [b.id for b in found] == ["b1"]
        assert found[0].status is BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_blank_email_finds_nothing(self, store):
        assert await store.find_bookings("  ") == []

    @pytest.mark.asyncio
    async def test_unseeded_store_is_empty(self):
        assert await BookingStore(latency_ms=0, seed=False).list_all() == []

    @pytest.mark.asyncio
    async def test_list_all_returns_copies(self, store):
        bookings = await store.list_all()
        bookings[0].status = BookingStatus.CANCELLED
        assert (await store.get_booking("b1")).status is BookingStatus.CONFIRMED
