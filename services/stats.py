"""
Statistics read model, derived from the ledgers each time it is asked for.
"""

from models.models import ReservationStatus
from services.billing import CENTS


def compute_stats(repository):
    """
    Summarize bookings, income and current occupancy.

    Args:
        repository: storage repository

    Returns:
        dict: totals and occupancy figures
    """
    counts = repository.reservation_counts()
    by_status = {status.value: counts.get(status.value, 0) for status in ReservationStatus}

    slots = repository.list_slots()
    occupied = sum(1 for slot in slots if slot.is_occupied)
    completed = by_status[ReservationStatus.COMPLETED.value]
    total_income = repository.payment_total()

    return {
        "total_bookings": sum(by_status.values()),
        "reservations_by_status": by_status,
        "total_income": str(total_income),
        "average_income_per_stay": str(
            (total_income / max(1, completed)).quantize(CENTS)
        ),
        "total_slots": len(slots),
        "occupied_slots": occupied,
        "occupancy_rate": round((occupied / len(slots)) * 100, 2) if slots else 0.0,
    }
