"""
Slot Registry - the static set of physical slots and who is parked in them.

Occupancy is written only through ``occupy``/``release``/``reconcile`` and
only by the lifecycle controller, while holding the slot's lock.
"""

import logging
import threading
from contextlib import contextmanager

from models.models import Slot
from services.errors import SlotAlreadyOccupied, SlotNotFound, ValidationError
from services.repository import ANY_OCCUPANT

logger = logging.getLogger(__name__)


class SlotLocks:
    """One mutex per slot id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, slot_id):
        with self._guard:
            lock = self._locks.get(slot_id)
            if lock is None:
                lock = self._locks[slot_id] = threading.Lock()
            return lock


class SlotRegistry:
    def __init__(self, repository, locks=None):
        self.repository = repository
        self.locks = locks or SlotLocks()

    @contextmanager
    def slot_lock(self, slot_id):
        """Exclusive section for check-then-write work on one slot."""
        with self.locks.get(slot_id):
            yield

    def register_slot(self, slot_number, level):
        """
        Provision a new physical slot.

        Numeric slot numbers are zero-padded to three digits so that ordering
        by number is stable ("002" sorts before "010").
        """
        slot_number = "" if slot_number is None else str(slot_number).strip()
        level = str(level or "").strip()
        if not slot_number:
            raise ValidationError("Slot number is required.")
        if not level:
            raise ValidationError("Slot level is required.")
        if slot_number.isdigit():
            slot_number = slot_number.zfill(3)

        slot = self.repository.insert_slot(Slot(slot_number=slot_number, level=level))
        logger.info("Registered slot %s on level %s", slot.slot_number, slot.level)
        return slot

    def get(self, slot_id):
        slot = self.repository.find_slot(slot_id)
        if slot is None:
            raise SlotNotFound(f"Slot {slot_id} does not exist.", slot_id=slot_id)
        return slot

    def list_slots(self):
        return self.repository.list_slots()

    def occupy(self, slot_id, reservation_id):
        """Mark the slot occupied by ``reservation_id``. Caller holds the slot lock."""
        slot = self.get(slot_id)
        if slot.is_occupied and slot.occupant_reservation_id != reservation_id:
            logger.error(
                "Invariant violation: slot %s already occupied by reservation %s, "
                "refusing check-in of reservation %s",
                slot.slot_number, slot.occupant_reservation_id, reservation_id,
            )
            raise SlotAlreadyOccupied(
                f"Slot {slot.slot_number} is occupied by another reservation.",
                slot_id=slot_id,
                occupant_reservation_id=slot.occupant_reservation_id,
            )
        return self.repository.update_slot_occupancy(
            slot_id, True, reservation_id, expected_occupant_id=slot.occupant_reservation_id
        )

    def release(self, slot_id, reservation_id):
        """Clear the slot if ``reservation_id`` is its occupant. Caller holds the slot lock."""
        slot = self.get(slot_id)
        if slot.occupant_reservation_id != reservation_id:
            logger.warning(
                "Slot %s occupant is %s, not reservation %s; leaving occupancy unchanged",
                slot.slot_number, slot.occupant_reservation_id, reservation_id,
            )
            return slot
        return self.repository.update_slot_occupancy(
            slot_id, False, None, expected_occupant_id=reservation_id
        )

    def reconcile(self, active_reservations):
        """
        Make every slot's occupancy agree with the active reservations.

        Args:
            active_reservations: reservations currently in the active state

        Returns:
            list: the slots whose occupancy had to be corrected
        """
        occupant_by_slot = {}
        for reservation in active_reservations:
            if reservation.slot_id in occupant_by_slot:
                # Two active stays on one slot; keep the earlier check-in
                logger.error(
                    "Invariant violation: slot %s has active reservations %s and %s",
                    reservation.slot_id, occupant_by_slot[reservation.slot_id].id, reservation.id,
                )
                current = occupant_by_slot[reservation.slot_id]
                if reservation.actual_entry_time >= current.actual_entry_time:
                    continue
            occupant_by_slot[reservation.slot_id] = reservation

        corrected = []
        for slot in self.list_slots():
            occupant = occupant_by_slot.get(slot.id)
            expected_id = occupant.id if occupant else None
            if slot.is_occupied == (occupant is not None) and slot.occupant_reservation_id == expected_id:
                continue
            with self.slot_lock(slot.id):
                updated = self.repository.update_slot_occupancy(
                    slot.id, occupant is not None, expected_id, expected_occupant_id=ANY_OCCUPANT
                )
            logger.warning(
                "Reconciled slot %s: occupied=%s occupant=%s",
                updated.slot_number, updated.is_occupied, updated.occupant_reservation_id,
            )
            corrected.append(updated)
        return corrected
