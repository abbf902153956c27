"""
Billing Calculator - turns a parking stay into a payment.
"""

import logging
import math
from decimal import Decimal, ROUND_HALF_UP

from models.models import Payment, PaymentStatus, ReservationStatus
from services.errors import DuplicateKey, PaymentRecordError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HOURLY_RATE = Decimal("100")
CENTS = Decimal("0.01")


def billable_hours(entry_time, exit_time):
    """
    Whole hours to charge for a stay.
    Any started hour is charged in full, with a minimum of one hour.
    """
    elapsed = (exit_time - entry_time).total_seconds()
    return max(1, math.ceil(elapsed / 3600))


class BillingCalculator:
    def __init__(self, repository, hourly_rate=DEFAULT_HOURLY_RATE):
        self.repository = repository
        self.hourly_rate = Decimal(str(hourly_rate))

    def compute_amount(self, duration_hours):
        """
        Calculate the charge for a number of billed hours.

        Args:
            duration_hours: hours to charge

        Returns:
            Decimal: amount rounded to 2 decimal places
        """
        hours = Decimal(str(duration_hours))
        if hours < 0:
            raise ValidationError("Duration cannot be negative.", duration_hours=str(duration_hours))
        return (hours * self.hourly_rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def record_payment(self, reservation_id, user_id, amount, duration_hours):
        """
        Persist the payment for a completed reservation.
        The reservation must already be completed when this is called.
        """
        reservation = self.repository.find_reservation(reservation_id)
        if reservation is None:
            raise PaymentRecordError(
                f"Reservation {reservation_id} does not exist.",
                reservation_id=reservation_id,
            )
        if reservation.status != ReservationStatus.COMPLETED:
            raise PaymentRecordError(
                f"Reservation {reservation_id} is {reservation.status.value}, not completed.",
                reservation_id=reservation_id,
            )

        payment = Payment(
            reservation_id=reservation_id,
            user_id=user_id,
            amount=Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP),
            duration_hours=int(duration_hours),
            status=PaymentStatus.COMPLETED,
        )
        try:
            payment = self.repository.insert_payment(payment)
        except DuplicateKey as error:
            raise PaymentRecordError(error.message, reservation_id=reservation_id) from error

        logger.info(
            "Recorded payment of %s for reservation %s (%s h)",
            payment.amount, reservation_id, payment.duration_hours,
        )
        return payment
