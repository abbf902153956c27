"""Tunable rules shared by the allocation engine and lifecycle controller."""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal


@dataclass(frozen=True)
class ParkingPolicy:
    hourly_rate: Decimal = Decimal("100")
    checkin_grace_before: timedelta = timedelta(minutes=15)
    past_tolerance: timedelta = timedelta(minutes=1)
    allocation_attempts: int = 3

    @classmethod
    def from_config(cls, config):
        """Build a policy from a Flask config mapping."""
        return cls(
            hourly_rate=Decimal(str(config.get("HOURLY_RATE", 100))),
            checkin_grace_before=timedelta(
                minutes=float(config.get("CHECKIN_GRACE_BEFORE_MINUTES", 15))
            ),
            past_tolerance=timedelta(seconds=float(config.get("PAST_TOLERANCE_SECONDS", 60))),
            allocation_attempts=int(config.get("ALLOCATION_ATTEMPTS", 3)),
        )
