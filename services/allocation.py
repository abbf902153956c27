"""
Allocation Engine - decides which slot a booking gets.

A slot qualifies for a window when no confirmed or active reservation on it
overlaps the window under the half-open rule::

    [s1, e1) and [s2, e2) conflict  <=>  s1 < e2 and s2 < e1

Among qualifying slots the one with the lowest slot number wins, so the same
ledger always yields the same allocation.
"""

import logging
import re

from models.models import BLOCKING_STATUSES, Reservation, ReservationStatus, naive_utc, utcnow
from services import notifications
from services.errors import (
    ConcurrentConflict, InvalidTimeWindow, NoAvailableSlot, ValidationError
)
from services.lifecycle import ensure_transition, load_reservation
from services.policy import ParkingPolicy

logger = logging.getLogger(__name__)


def normalize_plate(plate):
    """Upper-case a plate number and drop any whitespace."""
    normalized = re.sub(r"\s+", "", str(plate or "")).upper()
    if not normalized:
        raise ValidationError("Vehicle plate number is required.")
    return normalized


def slot_order(slot):
    """Natural ordering on slot numbers, so "A2" comes before "A10"."""
    parts = re.split(r"(\d+)", slot.slot_number)
    return [(0, int(part), "") if part.isdigit() else (1, 0, part) for part in parts if part]


class AllocationEngine:
    def __init__(self, repository, registry, notifier=None, policy=None, clock=utcnow):
        self.repository = repository
        self.registry = registry
        self.notifier = notifier
        self.policy = policy or ParkingPolicy()
        self.clock = clock

    def _validate_window(self, start_time, end_time):
        if start_time is None or end_time is None:
            raise InvalidTimeWindow("Both start and end time are required.")
        start_time, end_time = naive_utc(start_time), naive_utc(end_time)
        if end_time <= start_time:
            raise InvalidTimeWindow(
                "End time must be after start time.",
                start_time=start_time.isoformat(),
                end_time=end_time.isoformat(),
            )
        if start_time < self.clock() - self.policy.past_tolerance:
            raise InvalidTimeWindow(
                "Start time is in the past.",
                start_time=start_time.isoformat(),
            )
        return start_time, end_time

    def _candidates(self, slot_id):
        if slot_id is not None:
            return [self.registry.get(slot_id)]
        return sorted(self.registry.list_slots(), key=slot_order)

    def _is_free(self, slot, start_time, end_time):
        return not self.repository.find_overlapping_reservations(
            slot.id, start_time, end_time, BLOCKING_STATUSES
        )

    def find_available_slots(self, start_time, end_time):
        """Slots with no blocking reservation in ``[start_time, end_time)``."""
        start_time, end_time = self._validate_window(start_time, end_time)
        return [
            slot for slot in self._candidates(None)
            if self._is_free(slot, start_time, end_time)
        ]

    def _allocate_once(self, candidates, reservation_fields):
        start_time = reservation_fields["start_time"]
        end_time = reservation_fields["end_time"]
        for slot in candidates:
            with self.registry.slot_lock(slot.id):
                if not self._is_free(slot, start_time, end_time):
                    continue
                return self.repository.insert_reservation(
                    Reservation(slot_id=slot.id, **reservation_fields),
                    conflict_statuses=BLOCKING_STATUSES,
                )
        return None

    def reserve(self, user_id, vehicle_plate, start_time, end_time, slot_id=None, confirm=True):
        """
        Book a slot for a vehicle over a time window.

        Args:
            user_id: owner of the booking
            vehicle_plate: plate of the vehicle that will park
            start_time: window start (inclusive)
            end_time: window end (exclusive)
            slot_id: book this slot only; any slot when ``None``
            confirm: create the booking confirmed, or as a pending hold

        Returns:
            Reservation: the stored booking

        Raises:
            InvalidTimeWindow, NoAvailableSlot, SlotNotFound, ConcurrentConflict
        """
        plate = normalize_plate(vehicle_plate)
        start_time, end_time = self._validate_window(start_time, end_time)
        candidates = self._candidates(slot_id)

        reservation_fields = {
            "user_id": user_id,
            "vehicle_plate": plate,
            "start_time": start_time,
            "end_time": end_time,
            "planned_minutes": int((end_time - start_time).total_seconds() // 60),
            "status": ReservationStatus.CONFIRMED if confirm else ReservationStatus.PENDING,
        }

        last_conflict = None
        for attempt in range(1, self.policy.allocation_attempts + 1):
            try:
                reservation = self._allocate_once(candidates, reservation_fields)
            except ConcurrentConflict as conflict:
                # Another writer got there first; rescan with fresh ledger data
                logger.warning("Allocation attempt %d lost a race: %s", attempt, conflict.message)
                last_conflict = conflict
                continue

            if reservation is None:
                raise NoAvailableSlot(
                    "No parking slot is free for the requested window.",
                    start_time=start_time.isoformat(),
                    end_time=end_time.isoformat(),
                    slot_id=slot_id,
                )

            logger.info(
                "Reserved slot %s for %s (%s - %s), reservation %s",
                reservation.slot_id, plate, start_time.isoformat(),
                end_time.isoformat(), reservation.id,
            )
            if confirm and self.notifier is not None:
                self.notifier.publish(notifications.RESERVATION_CONFIRMED, reservation.to_dict())
            return reservation

        raise ConcurrentConflict(
            "Could not allocate a slot after repeated concurrent conflicts.",
            attempts=self.policy.allocation_attempts,
        ) from last_conflict

    def cancel(self, reservation_id, actor_id):
        """
        Cancel a booking that has not been checked in.
        Cancelling an already cancelled booking returns it unchanged.
        """
        reservation = load_reservation(self.repository, reservation_id)
        if reservation.status == ReservationStatus.CANCELLED:
            return reservation
        ensure_transition(reservation, ReservationStatus.CANCELLED)

        try:
            reservation = self.repository.update_reservation_status(
                reservation.id, reservation.status, ReservationStatus.CANCELLED,
                {"cancelled_by": str(actor_id)},
            )
        except ConcurrentConflict:
            current = load_reservation(self.repository, reservation_id)
            if current.status == ReservationStatus.CANCELLED:
                return current
            ensure_transition(current, ReservationStatus.CANCELLED)
            raise

        logger.info("Reservation %s cancelled by %s", reservation.id, actor_id)
        if self.notifier is not None:
            self.notifier.publish(notifications.RESERVATION_CANCELLED, reservation.to_dict())
        return reservation
