"""Shared fixtures for the reservation core tests."""

from datetime import datetime, timedelta

from app import build_core
from models.models import create_db, make_engine, make_session_factory
from services.notifications import Notifier
from services.policy import ParkingPolicy

# Window start used across the tests
T = datetime(2030, 1, 1, 9, 0)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def set(self, now):
        self.now = now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_core(database_url="sqlite://", clock=None, policy=None):
    """
    Build a core over a fresh database.

    Returns:
        tuple: (core, engine, clock)
    """
    clock = clock or FakeClock(T - timedelta(hours=1))
    engine = make_engine(database_url)
    create_db(engine)
    core = build_core(
        make_session_factory(engine),
        policy=policy or ParkingPolicy(),
        notifier=Notifier(),
        clock=clock,
    )
    return core, engine, clock


def hours(value):
    return timedelta(hours=value)
