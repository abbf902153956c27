"""
Lifecycle Controller - moves reservations through their states.

    pending -> confirmed -> active -> completed
    pending | confirmed -> cancelled

``completed`` and ``cancelled`` are terminal. Every status write is a
compare-and-swap on the status read just before, so a check-in racing a
cancellation can only let one of them through.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from models.models import BLOCKING_STATUSES, Payment, Reservation, ReservationStatus, utcnow
from services import notifications
from services.billing import billable_hours
from services.errors import (
    CheckInWindowViolation, ConcurrentConflict, InvalidStateTransition,
    NoAvailableSlot, ParkingError, ReservationNotFound
)
from services.policy import ParkingPolicy

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED},
    ReservationStatus.CONFIRMED: {ReservationStatus.ACTIVE, ReservationStatus.CANCELLED},
    ReservationStatus.ACTIVE: {ReservationStatus.COMPLETED},
    ReservationStatus.COMPLETED: set(),
    ReservationStatus.CANCELLED: set(),
}

SYSTEM_ACTOR = "system"


def ensure_transition(reservation, target):
    """Raise ``InvalidStateTransition`` unless ``reservation`` may move to ``target``."""
    if target not in ALLOWED_TRANSITIONS[reservation.status]:
        raise InvalidStateTransition(
            f"Reservation {reservation.id} cannot go from "
            f"{reservation.status.value} to {target.value}.",
            reservation_id=reservation.id,
            status=reservation.status.value,
            target=target.value,
        )


def load_reservation(repository, reservation_id):
    reservation = repository.find_reservation(reservation_id)
    if reservation is None:
        raise ReservationNotFound(
            f"Reservation {reservation_id} does not exist.",
            reservation_id=reservation_id,
        )
    return reservation


@dataclass
class CheckoutResult:
    reservation: Reservation
    payment: Optional[Payment] = None
    warning: Optional[str] = None

    def to_dict(self):
        return {
            "reservation": self.reservation.to_dict(),
            "payment": self.payment.to_dict() if self.payment else None,
            "warning": self.warning,
        }


class LifecycleController:
    def __init__(self, repository, registry, billing, notifier=None, policy=None, clock=utcnow):
        self.repository = repository
        self.registry = registry
        self.billing = billing
        self.notifier = notifier
        self.policy = policy or ParkingPolicy()
        self.clock = clock

    def _publish(self, event, reservation):
        if self.notifier is not None:
            self.notifier.publish(event, reservation.to_dict())

    def confirm(self, reservation_id):
        """
        Turn a pending hold into a confirmed booking.
        The slot must still be free for the whole window.
        """
        reservation = load_reservation(self.repository, reservation_id)
        if reservation.status == ReservationStatus.CONFIRMED:
            return reservation
        ensure_transition(reservation, ReservationStatus.CONFIRMED)

        with self.registry.slot_lock(reservation.slot_id):
            clashes = [
                other for other in self.repository.find_overlapping_reservations(
                    reservation.slot_id, reservation.start_time, reservation.end_time,
                    BLOCKING_STATUSES,
                )
                if other.id != reservation.id
            ]
            if clashes:
                raise NoAvailableSlot(
                    f"Slot {reservation.slot_id} is no longer free for this window.",
                    slot_id=reservation.slot_id,
                )
            try:
                reservation = self.repository.update_reservation_status(
                    reservation.id, ReservationStatus.PENDING, ReservationStatus.CONFIRMED,
                    guard_overlap=True,
                )
            except ConcurrentConflict as conflict:
                if "conflicting_reservation_id" in conflict.details:
                    raise NoAvailableSlot(
                        f"Slot {reservation.slot_id} is no longer free for this window.",
                        slot_id=reservation.slot_id,
                    ) from conflict
                raise

        logger.info("Confirmed reservation %s", reservation.id)
        self._publish(notifications.RESERVATION_CONFIRMED, reservation)
        return reservation

    def check_in(self, reservation_id):
        """
        Record the vehicle's arrival and mark its slot occupied.

        Arrival is accepted from ``start - grace`` up to ``end``. An early
        arrival is recorded as entering at the window start.
        """
        now = self.clock()
        reservation = load_reservation(self.repository, reservation_id)
        ensure_transition(reservation, ReservationStatus.ACTIVE)

        opens_at = reservation.start_time - self.policy.checkin_grace_before
        if not opens_at <= now <= reservation.end_time:
            raise CheckInWindowViolation(
                f"Check-in for reservation {reservation.id} is allowed between "
                f"{opens_at.isoformat()} and {reservation.end_time.isoformat()}.",
                reservation_id=reservation.id,
                opens_at=opens_at.isoformat(),
                closes_at=reservation.end_time.isoformat(),
            )

        with self.registry.slot_lock(reservation.slot_id):
            self.registry.occupy(reservation.slot_id, reservation.id)
            try:
                reservation = self.repository.update_reservation_status(
                    reservation.id, ReservationStatus.CONFIRMED, ReservationStatus.ACTIVE,
                    {"actual_entry_time": max(now, reservation.start_time)},
                )
            except ParkingError:
                # Cancelled or checked in elsewhere meanwhile; give the slot back
                self.registry.release(reservation.slot_id, reservation.id)
                raise

        logger.info("Checked in reservation %s on slot %s", reservation.id, reservation.slot_id)
        self._publish(notifications.RESERVATION_CHECKED_IN, reservation)
        return reservation

    def check_out(self, reservation_id):
        """
        Record departure, free the slot and bill the stay.

        A billing failure does not undo the checkout; it is returned as the
        result's ``warning``.

        Returns:
            CheckoutResult: completed reservation, payment and any warning
        """
        now = self.clock()
        reservation = load_reservation(self.repository, reservation_id)
        ensure_transition(reservation, ReservationStatus.COMPLETED)

        exit_time = max(now, reservation.actual_entry_time)
        with self.registry.slot_lock(reservation.slot_id):
            reservation = self.repository.update_reservation_status(
                reservation.id, ReservationStatus.ACTIVE, ReservationStatus.COMPLETED,
                {"actual_exit_time": exit_time},
            )
            self.registry.release(reservation.slot_id, reservation.id)

        logger.info("Checked out reservation %s from slot %s", reservation.id, reservation.slot_id)

        result = CheckoutResult(reservation=reservation)
        hours = billable_hours(reservation.actual_entry_time, reservation.actual_exit_time)
        try:
            amount = self.billing.compute_amount(hours)
            result.payment = self.billing.record_payment(
                reservation.id, reservation.user_id, amount, hours
            )
        except (ParkingError, SQLAlchemyError) as error:
            logger.exception("Billing failed for reservation %s", reservation.id)
            result.warning = f"Checkout completed but payment could not be recorded: {error}"

        self._publish(notifications.RESERVATION_CHECKED_OUT, reservation)
        return result

    def expire_stale(self, now=None):
        """
        Cancel bookings whose window ended without a check-in.

        Safe to run concurrently with itself; records already moved on by
        another caller are skipped.

        Returns:
            list: reservations cancelled by this run
        """
        now = now or self.clock()
        stale = self.repository.list_reservations(
            statuses=(ReservationStatus.PENDING, ReservationStatus.CONFIRMED),
            ends_before=now,
        )

        expired = []
        for reservation in stale:
            try:
                updated = self.repository.update_reservation_status(
                    reservation.id, reservation.status, ReservationStatus.CANCELLED,
                    {"cancelled_by": SYSTEM_ACTOR},
                )
            except (ConcurrentConflict, ReservationNotFound):
                logger.debug("Reservation %s changed before it could expire", reservation.id)
                continue
            expired.append(updated)
            self._publish(notifications.RESERVATION_CANCELLED, updated)

        if expired:
            logger.info("Expired %d stale reservation(s)", len(expired))
        return expired

    def reconcile_occupancy(self):
        active = self.repository.list_reservations(statuses=(ReservationStatus.ACTIVE,))
        return self.registry.reconcile(active)
