"""In-memory booking store: the authoritative state for the assistant.

Holds the service catalog, bookings and OTP challenges.  Every operation
awaits a short simulated latency so the dialogue loop behaves the way it
would against a remote backend.

**Write discipline**

All mutations run under a single ``asyncio.Lock``.  The latency sleep
happens *before* the lock is taken and no ``await`` happens between the
conflict check and the write, so a cancelled caller never leaves a
half-applied change behind.

Callers always receive copies; the store's own records are never handed
out.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import random
import uuid

from medcore.config import (
    OTP_ACCEPTED_SUFFIX,
    OTP_DEMO_CODE,
    OTP_MAX_ATTEMPTS,
    OTP_TTL_SECONDS,
    STORE_LATENCY_MS,
)
from medcore.models import (
    BOOKING_TRANSITIONS,
    Booking,
    BookingDraft,
    BookingStatus,
    OtpChallenge,
    Service,
    TimeSlot,
    UserDetails,
)
from medcore.utils import normalize_phone, normalize_slot_time, redact_pii

logger = logging.getLogger(__name__)

# ── Schedule ────────────────────────────────────────────────────────
BASE_SCHEDULE: tuple[str, ...] = (
    "09:00 AM", "09:30 AM", "10:00 AM", "10:30 AM", "11:00 AM",
    "01:00 PM", "01:30 PM", "02:00 PM", "03:30 PM", "04:00 PM",
)
DEFAULT_AVAILABILITY_RATIO = 0.7
LATENCY_JITTER = 0.25

SERVICES: tuple[Service, ...] = (
    Service(
        id="s1",
        name="General Consultation",
        description="A standard check-up to assess your overall health and vitals.",
        duration_minutes=30,
        price=50,
        image_url="https://images.unsplash.com/photo-1666214280557-f1b5022eb634?w=400&h=200&fit=crop",
    ),
    Service(
        id="s2",
        name="Specialist Referral",
        description="Consultation to determine if you need a specialist surgeon or therapy.",
        duration_minutes=45,
        price=120,
        image_url="https://images.unsplash.com/photo-1537368910025-4003508ce487?w=400&h=200&fit=crop",
    ),
    Service(
        id="s3",
        name="Telehealth Session",
        description="Remote video consultation via secure HIPAA-compliant link.",
        duration_minutes=20,
        price=40,
        image_url="https://images.unsplash.com/photo-1576091160550-217358c7db81?w=400&h=200&fit=crop",
    ),
)


class BookingStoreError(Exception):
    """Base class for domain failures raised by the store."""


class ServiceNotFoundError(BookingStoreError):
    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"Unknown service: {service_id}")


class SlotUnavailableError(BookingStoreError):
    """The requested (service, date, time) is not offered or already held."""

    def __init__(self, service_id: str, date: dt.date, time: str):
        self.service_id = service_id
        self.date = date
        self.time = time
        super().__init__(f"Slot {time} on {date.isoformat()} is not available for {service_id}")


class InvalidTransitionError(BookingStoreError):
    def __init__(self, booking_id: str, current: BookingStatus, target: BookingStatus):
        self.booking_id = booking_id
        self.current = current
        self.target = target
        super().__init__(
            f"Booking {booking_id} cannot move from {current.value} to {target.value}"
        )


class BookingStore:
    """Async in-memory repository for services, slots, bookings and OTPs."""

    def __init__(
        self,
        *,
        latency_ms: int | None = None,
        availability_ratio: float = DEFAULT_AVAILABILITY_RATIO,
        services: tuple[Service, ...] = SERVICES,
        seed: bool = True,
    ):
        self._latency_ms = STORE_LATENCY_MS if latency_ms is None else latency_ms
        self._availability_ratio = availability_ratio
        self._services: dict[str, Service] = {s.id: s for s in services}
        self._bookings: dict[str, Booking] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._otps: dict[str, OtpChallenge] = {}
        self._write_lock = asyncio.Lock()
        if seed:
            self._seed()

    # ── Internal helpers ─────────────────────────────────────────────

    def _seed(self) -> None:
        """Pre-load one confirmed booking so lookups have something to find."""
        service = self._services.get("s1")
        if service is None:
            return
        booking = Booking(
            id="b1",
            service_id=service.id,
            service_name=service.name,
            date=dt.date.today(),
            time="10:00 AM",
            user_details=UserDetails(
                name="John Doe", email="john@example.com", phone="+15550101",
            ),
            status=BookingStatus.CONFIRMED,
        )
        self._bookings[booking.id] = booking

    async def _simulate_latency(self) -> None:
        if self._latency_ms <= 0:
            return
        jitter = random.uniform(1 - LATENCY_JITTER, 1 + LATENCY_JITTER)
        await asyncio.sleep(self._latency_ms * jitter / 1000)

    def _require_service(self, service_id: str) -> Service:
        service = self._services.get(service_id)
        if service is None:
            raise ServiceNotFoundError(service_id)
        return service

    def _offered_times(self, service_id: str, date: dt.date) -> list[str]:
        """The slots the calendar offers on *date*, before existing bookings.

        The draw is seeded by (service, date) so repeated queries agree with
        each other and with ``create_booking``.
        """
        rng = random.Random(f"{service_id}:{date.isoformat()}")
        return [t for t in BASE_SCHEDULE if rng.random() < self._availability_ratio]

    def _held_times(
        self, service_id: str, date: dt.date, *, exclude_id: str | None = None,
    ) -> set[str]:
        return {
            b.time
            for b in self._bookings.values()
            if b.status is BookingStatus.CONFIRMED
            and b.service_id == service_id
            and b.date == date
            and b.id != exclude_id
        }

    def _resolve_slot(
        self, service_id: str, date: dt.date, time: str, *, exclude_id: str | None = None,
    ) -> str:
        """Normalise *time* and make sure it is offered and free."""
        slot = normalize_slot_time(time)
        if slot is None or slot not in self._offered_times(service_id, date):
            raise SlotUnavailableError(service_id, date, time)
        if slot in self._held_times(service_id, date, exclude_id=exclude_id):
            raise SlotUnavailableError(service_id, date, slot)
        return slot

    @staticmethod
    def _same_request(booking: Booking, draft: BookingDraft) -> bool:
        return (
            booking.service_id == draft.service_id
            and booking.date == draft.date
            and booking.time == normalize_slot_time(draft.time)
            and booking.user_details.email.lower() == draft.user_details.email.lower()
        )

    @staticmethod
    def _transition(booking: Booking, target: BookingStatus, **changes) -> Booking:
        if target not in BOOKING_TRANSITIONS[booking.status]:
            raise InvalidTransitionError(booking.id, booking.status, target)
        return booking.model_copy(
            update={"status": target, "updated_at": dt.datetime.now(dt.UTC), **changes},
        )

    # ── Catalog & availability ───────────────────────────────────────

    async def list_services(self) -> list[Service]:
        await self._simulate_latency()
        return [s.model_copy() for s in self._services.values()]

    async def get_service(self, service_id: str) -> Service:
        await self._simulate_latency()
        return self._require_service(service_id).model_copy()

    async def get_availability(self, date: dt.date, service_id: str) -> list[TimeSlot]:
        """Return the free slots for *service_id* on *date*.

        Recomputed on every call; slots held by a confirmed booking for the
        exact (service, date, time) are left out.
        """
        await self._simulate_latency()
        self._require_service(service_id)
        held = self._held_times(service_id, date)
        return [
            TimeSlot(time=t, available=True)
            for t in self._offered_times(service_id, date)
            if t not in held
        ]

    # ── Verification ─────────────────────────────────────────────────

    async def issue_otp(self, phone: str) -> OtpChallenge:
        """Create a challenge for *phone*.  No SMS leaves the process."""
        await self._simulate_latency()
        phone = normalize_phone(phone)
        now = dt.datetime.now(dt.UTC)
        challenge = OtpChallenge(
            phone=phone,
            issued_code=OTP_DEMO_CODE,
            issued_at=now,
            expires_at=now + dt.timedelta(seconds=OTP_TTL_SECONDS),
        )
        async with self._write_lock:
            self._otps[phone] = challenge
        logger.info("OTP issued to %s (demo mode, no SMS sent)", redact_pii(phone))
        return challenge.model_copy()

    async def verify_otp(self, phone: str, code: str) -> bool:
        """Check *code* for *phone*.

        The demo accepts the fixed code or any code ending in the accepted
        suffix.  An outstanding challenge is consulted first: once expired or
        out of attempts it fails regardless of the code.  A success consumes it.
        """
        await self._simulate_latency()
        phone = normalize_phone(phone)
        code = (code or "").strip()

        async with self._write_lock:
            challenge = self._otps.get(phone)
            if challenge is not None and (
                challenge.is_expired() or challenge.attempts >= OTP_MAX_ATTEMPTS
            ):
                logger.info("OTP for %s expired or locked", redact_pii(phone))
                return False

            accepted = bool(code) and (
                code == OTP_DEMO_CODE
                or bool(OTP_ACCEPTED_SUFFIX) and code.endswith(OTP_ACCEPTED_SUFFIX)
            )
            if not accepted:
                if challenge is not None:
                    challenge.attempts += 1
                return False

            if challenge is not None:
                challenge.consumed = True
                del self._otps[phone]
        return True

    # ── Bookings ─────────────────────────────────────────────────────

    async def create_booking(
        self, draft: BookingDraft, idempotency_key: str | None = None,
    ) -> Booking:
        """Store a confirmed booking for *draft*.

        A repeated *idempotency_key* returns the booking created the first
        time instead of storing a second one, provided that booking is for
        the same service, slot and email.  A key reused for a different
        request is treated as a new request.  Once the booking has been
        cancelled the key is released and a new booking may be made with it.

        Raises:
            ServiceNotFoundError: the draft names an unknown service.
            SlotUnavailableError: the slot is not offered or already held.
        """
        await self._simulate_latency()
        async with self._write_lock:
            existing_id = self._by_idempotency_key.get(idempotency_key or "")
            existing = self._bookings.get(existing_id) if existing_id else None
            if existing is not None and not self._same_request(existing, draft):
                logger.warning(
                    "Idempotency key %s reused for a different request; booking anew",
                    idempotency_key,
                )
                existing = None
            if existing is not None and existing.status is not BookingStatus.CANCELLED:
                logger.info(
                    "Idempotent replay for key %s -> booking %s", idempotency_key, existing.id,
                )
                return existing.model_copy(deep=True)

            service = self._require_service(draft.service_id)
            slot = self._resolve_slot(service.id, draft.date, draft.time)

            pending = Booking(
                id=f"b{uuid.uuid4().hex[:10]}",
                service_id=service.id,
                service_name=service.name,
                date=draft.date,
                time=slot,
                user_details=draft.user_details,
                status=BookingStatus.PENDING,
                idempotency_key=idempotency_key,
            )
            booking = self._transition(pending, BookingStatus.CONFIRMED)
            self._bookings[booking.id] = booking
            if idempotency_key:
                self._by_idempotency_key[idempotency_key] = booking.id

        logger.info(
            "Booking %s created: %s on %s at %s",
            booking.id, service.id, booking.date.isoformat(), booking.time,
        )
        return booking.model_copy(deep=True)

    async def reschedule_booking(
        self, booking_id: str, date: dt.date, time: str,
    ) -> Booking | None:
        """Move a booking to a new slot, keeping its id and status.

        Returns ``None`` when *booking_id* is unknown.

        Raises:
            InvalidTransitionError: the booking is cancelled.
            SlotUnavailableError: the new slot is not offered or already held.
        """
        await self._simulate_latency()
        async with self._write_lock:
            booking = self._bookings.get(booking_id)
            if booking is None:
                return None
            if booking.status is BookingStatus.CANCELLED:
                raise InvalidTransitionError(
                    booking_id, booking.status, BookingStatus.CONFIRMED,
                )

            slot = self._resolve_slot(
                booking.service_id, date, time, exclude_id=booking.id,
            )
            if booking.date == date and booking.time == slot:
                return booking.model_copy(deep=True)

            updated = self._transition(
                booking, BookingStatus.CONFIRMED, date=date, time=slot,
            )
            self._bookings[booking_id] = updated

        logger.info(
            "Booking %s rescheduled to %s at %s", booking_id, date.isoformat(), slot,
        )
        return updated.model_copy(deep=True)

    async def cancel_booking(self, booking_id: str) -> bool:
        """Cancel a booking.  Unknown ids return ``False``; repeats are no-ops."""
        await self._simulate_latency()
        async with self._write_lock:
            booking = self._bookings.get(booking_id)
            if booking is None:
                return False
            if booking.status is BookingStatus.CANCELLED:
                return True
            self._bookings[booking_id] = self._transition(booking, BookingStatus.CANCELLED)

        logger.info("Booking %s cancelled", booking_id)
        return True

    async def get_booking(self, booking_id: str) -> Booking | None:
        await self._simulate_latency()
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def find_bookings(self, email: str) -> list[Booking]:
        """Case-insensitive substring match on the booking email."""
        await self._simulate_latency()
        needle = (email or "").strip().lower()
        if not needle:
            return []
        return [
            b.model_copy(deep=True)
            for b in self._bookings.values()
            if needle in b.user_details.email.lower()
        ]

    async def list_all(self) -> list[Booking]:
        await self._simulate_latency()
        return [
            b.model_copy(deep=True)
            for b in sorted(self._bookings.values(), key=lambda b: b.created_at)
        ]
