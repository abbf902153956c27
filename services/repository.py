"""
Storage repository for the reservation core.

Wraps the SQLAlchemy session factory behind the operations the core needs.
Every write that the concurrency rules depend on is conditional:

- reservations are inserted only after the slot is write-locked and the
  overlap query is re-run inside the same transaction;
- status changes are compare-and-swap on the expected prior status;
- occupancy changes are conditioned on the expected current occupant.

A lost race surfaces as ``ConcurrentConflict``. Unique-constraint violations
surface as ``DuplicateKey``.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from models.models import (
    BLOCKING_STATUSES, Payment, PaymentStatus, Reservation, Slot, User, utcnow
)
from services.errors import (
    ConcurrentConflict, DuplicateKey, ReservationNotFound, SlotNotFound
)

logger = logging.getLogger(__name__)

# Occupancy writes made with this expectation skip the occupant check
ANY_OCCUPANT = object()


def _lock_slot(db, slot_id, now):
    """
    Take the slot's write lock inside the current transaction.

    The lock is a write to the slot row: a row lock on PostgreSQL and MySQL,
    the database write lock on SQLite (which ignores ``FOR UPDATE`` and only
    begins a transaction at the first write). Concurrent writers for the
    slot, in this process or another, wait here until the holder commits.
    """
    result = db.execute(
        update(Slot)
        .where(Slot.id == slot_id)
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise SlotNotFound(f"Slot {slot_id} does not exist.", slot_id=slot_id)
    return db.get(Slot, slot_id)


def _overlap_clause(slot_id, start_time, end_time, statuses):
    return (
        Reservation.slot_id == slot_id,
        Reservation.status.in_(list(statuses)),
        Reservation.start_time < end_time,
        Reservation.end_time > start_time,
    )


class SqlAlchemyRepository:
    """
    Reservation ledger, slot registry storage and payment store.

    Args:
        session_factory: a ``sessionmaker`` built with ``expire_on_commit=False``
        clock: callable returning the current naive UTC time
    """

    def __init__(self, session_factory, clock=utcnow):
        self.Session = session_factory
        self.clock = clock

    # Slots

    def find_slot(self, slot_id):
        with self.Session() as db:
            return db.get(Slot, slot_id)

    def list_slots(self):
        with self.Session() as db:
            return list(db.execute(select(Slot).order_by(Slot.slot_number)).scalars())

    def insert_slot(self, slot):
        try:
            with self.Session() as db, db.begin():
                db.add(slot)
        except IntegrityError as error:
            raise DuplicateKey(
                f"Slot number {slot.slot_number} already exists.",
                field="slot_number",
            ) from error
        return slot

    def update_slot_occupancy(self, slot_id, occupied, occupant_reservation_id,
                              expected_occupant_id=ANY_OCCUPANT):
        """
        Set the occupancy flag and occupant of a slot.

        When ``expected_occupant_id`` is given the write only applies if the
        slot currently holds that occupant (``None`` meaning vacant).
        """
        conditions = [Slot.id == slot_id]
        if expected_occupant_id is None:
            conditions.append(Slot.occupant_reservation_id.is_(None))
        elif expected_occupant_id is not ANY_OCCUPANT:
            conditions.append(Slot.occupant_reservation_id == expected_occupant_id)

        with self.Session() as db, db.begin():
            result = db.execute(
                update(Slot)
                .where(*conditions)
                .values(
                    is_occupied=occupied,
                    occupant_reservation_id=occupant_reservation_id,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if db.get(Slot, slot_id) is None:
                    raise SlotNotFound(f"Slot {slot_id} does not exist.", slot_id=slot_id)
                raise ConcurrentConflict(
                    f"Occupancy of slot {slot_id} changed concurrently.",
                    slot_id=slot_id,
                )
        return self.find_slot(slot_id)

    # Reservations

    def find_reservation(self, reservation_id):
        with self.Session() as db:
            return db.get(Reservation, reservation_id)

    def find_overlapping_reservations(self, slot_id, start_time, end_time,
                                      statuses=BLOCKING_STATUSES):
        with self.Session() as db:
            query = (
                select(Reservation)
                .where(*_overlap_clause(slot_id, start_time, end_time, statuses))
                .order_by(Reservation.start_time)
            )
            return list(db.execute(query).scalars())

    def list_reservations(self, statuses=None, user_id=None, slot_id=None, ends_before=None):
        query = select(Reservation)
        if statuses is not None:
            query = query.where(Reservation.status.in_(list(statuses)))
        if user_id is not None:
            query = query.where(Reservation.user_id == user_id)
        if slot_id is not None:
            query = query.where(Reservation.slot_id == slot_id)
        if ends_before is not None:
            query = query.where(Reservation.end_time < ends_before)

        with self.Session() as db:
            return list(db.execute(query.order_by(Reservation.start_time.desc())).scalars())

    def insert_reservation(self, reservation, conflict_statuses=BLOCKING_STATUSES):
        """
        Insert a reservation unless it clashes with one already on the slot.

        The slot is write-locked for the duration of the transaction, so
        concurrent inserts for one slot queue here, across processes too.
        """
        now = self.clock()
        reservation.created_at = reservation.created_at or now
        reservation.updated_at = now

        with self.Session() as db, db.begin():
            slot = _lock_slot(db, reservation.slot_id, now)

            if reservation.status in conflict_statuses:
                clash = db.execute(
                    select(Reservation.id)
                    .where(*_overlap_clause(
                        reservation.slot_id, reservation.start_time,
                        reservation.end_time, conflict_statuses
                    ))
                    .limit(1)
                ).first()
                if clash is not None:
                    raise ConcurrentConflict(
                        f"Slot {slot.slot_number} was booked for an overlapping window.",
                        slot_id=slot.id,
                        conflicting_reservation_id=clash[0],
                    )

            db.add(reservation)

        logger.debug("Inserted reservation %s on slot %s", reservation.id, reservation.slot_id)
        return reservation

    def update_reservation_status(self, reservation_id, expected_status, new_status,
                                  fields=None, guard_overlap=False):
        """
        Compare-and-swap a reservation's status.

        Args:
            reservation_id: reservation to update
            expected_status: status the row must still hold
            new_status: status to write
            fields: extra column values written in the same statement
            guard_overlap: re-check the half-open overlap rule against other
                blocking reservations on the slot before writing

        Returns:
            Reservation: the row as stored after the update
        """
        values = dict(fields or {})
        values["status"] = new_status
        values["updated_at"] = self.clock()

        current = None
        if guard_overlap:
            # Slot and window never change, so they are read before the lock
            current = self.find_reservation(reservation_id)
            if current is None:
                raise ReservationNotFound(
                    f"Reservation {reservation_id} does not exist.",
                    reservation_id=reservation_id,
                )

        with self.Session() as db, db.begin():
            if current is not None:
                _lock_slot(db, current.slot_id, values["updated_at"])
                clash = db.execute(
                    select(Reservation.id)
                    .where(
                        *_overlap_clause(
                            current.slot_id, current.start_time,
                            current.end_time, BLOCKING_STATUSES
                        ),
                        Reservation.id != reservation_id,
                    )
                    .limit(1)
                ).first()
                if clash is not None:
                    raise ConcurrentConflict(
                        f"Slot {current.slot_id} was booked for an overlapping window.",
                        slot_id=current.slot_id,
                        conflicting_reservation_id=clash[0],
                    )

            result = db.execute(
                update(Reservation)
                .where(Reservation.id == reservation_id, Reservation.status == expected_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if db.get(Reservation, reservation_id) is None:
                    raise ReservationNotFound(
                        f"Reservation {reservation_id} does not exist.",
                        reservation_id=reservation_id,
                    )
                raise ConcurrentConflict(
                    f"Reservation {reservation_id} is no longer {expected_status.value}.",
                    reservation_id=reservation_id,
                    expected_status=expected_status.value,
                )

        return self.find_reservation(reservation_id)

    def reservation_counts(self):
        """Number of reservations per status value."""
        with self.Session() as db:
            rows = db.execute(
                select(Reservation.status, func.count(Reservation.id)).group_by(Reservation.status)
            ).all()
        return {status.value: count for status, count in rows}

    # Payments

    def insert_payment(self, payment):
        payment.created_at = payment.created_at or self.clock()
        try:
            with self.Session() as db, db.begin():
                db.add(payment)
        except IntegrityError as error:
            raise DuplicateKey(
                f"Reservation {payment.reservation_id} already has a payment.",
                field="reservation_id",
            ) from error
        return payment

    def find_payment_for_reservation(self, reservation_id):
        with self.Session() as db:
            return db.execute(
                select(Payment).where(Payment.reservation_id == reservation_id)
            ).scalar_one_or_none()

    def list_payments(self, user_id=None):
        query = select(Payment).order_by(Payment.created_at.desc())
        if user_id is not None:
            query = query.where(Payment.user_id == user_id)
        with self.Session() as db:
            return list(db.execute(query).scalars())

    def payment_total(self):
        with self.Session() as db:
            total = db.execute(
                select(func.coalesce(func.sum(Payment.amount), 0))
                .where(Payment.status == PaymentStatus.COMPLETED)
            ).scalar_one()
        return Decimal(str(total)).quantize(Decimal("0.01"))

    # Users

    def register_user(self, user, vehicle=None):
        """Store a user and, optionally, their first vehicle in one transaction."""
        try:
            with self.Session() as db, db.begin():
                db.add(user)
                if vehicle is not None:
                    db.flush()
                    vehicle.user_id = user.id
                    db.add(vehicle)
        except IntegrityError as error:
            raise DuplicateKey(
                "Email, phone or vehicle plate is already registered.",
                field="user",
            ) from error
        return user

    def find_user(self, user_id):
        with self.Session() as db:
            return db.get(User, user_id)

