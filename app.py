"""
ParkIt - Main Application
JSON API for the parking slot reservation service.

This application provides:
- Customer registration with a vehicle
- Slot reservations over a time window, with optional slot preference
- Check-in / check-out with automated billing
- Administrative slot provisioning, occupancy reconciliation and statistics
- A maintenance sweep that cancels no-show bookings
"""

import atexit
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

import click
from flask import Blueprint, Flask, current_app, jsonify, request

from config import DefaultConfig
from models.models import (
    User, Vehicle, create_db, make_engine, make_session_factory, utcnow
)
from services.allocation import AllocationEngine, normalize_plate
from services.billing import BillingCalculator, billable_hours
from services.errors import ParkingError, ValidationError
from services.lifecycle import LifecycleController
from services.notifications import Notifier
from services.policy import ParkingPolicy
from services.repository import SqlAlchemyRepository
from services.slots import SlotRegistry
from services.stats import compute_stats

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


# Core Wiring


@dataclass
class ParkingCore:
    repository: SqlAlchemyRepository
    registry: SlotRegistry
    allocation: AllocationEngine
    lifecycle: LifecycleController
    billing: BillingCalculator
    notifier: Notifier


def build_core(session_factory, policy=None, notifier=None, clock=utcnow):
    """
    Assemble the reservation core over one database.

    The registry, and with it the per-slot locks, is shared by the
    allocation engine and the lifecycle controller.
    """
    policy = policy or ParkingPolicy()
    notifier = notifier or Notifier()
    repository = SqlAlchemyRepository(session_factory, clock=clock)
    registry = SlotRegistry(repository)
    billing = BillingCalculator(repository, hourly_rate=policy.hourly_rate)
    return ParkingCore(
        repository=repository,
        registry=registry,
        allocation=AllocationEngine(repository, registry, notifier, policy, clock),
        lifecycle=LifecycleController(repository, registry, billing, notifier, policy, clock),
        billing=billing,
        notifier=notifier,
    )


def get_core():
    return current_app.extensions["parkit"]


# Request Parsing Helpers


def parse_datetime(value, field):
    """
    Parse an ISO-8601 timestamp from a request.

    Args:
        value: raw value from the request
        field: name used in the error message

    Returns:
        datetime: parsed timestamp
    """
    if not value:
        raise ValidationError(f"'{field}' is required.", field=field)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as error:
        raise ValidationError(f"'{field}' is not an ISO-8601 timestamp.", field=field) from error


def parse_int(value, field, required=True):
    if value is None or value == "":
        if required:
            raise ValidationError(f"'{field}' is required.", field=field)
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"'{field}' must be an integer.", field=field) from error


def parse_bool(value, field, default):
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"'{field}' must be true or false.", field=field)
    return value


def json_object(value, field):
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{field}' must be a JSON object.", field=field)
    return value


def json_body():
    """Request body as a dict; an absent or unparseable body reads as empty."""
    return json_object(request.get_json(silent=True), "body")


def format_duration(start_time, end_time=None):
    """
    Length of a stay for the booking history, as "Xh Ym".

    Args:
        start_time: actual entry time
        end_time: actual exit time; a stay still in progress runs to now

    Returns:
        str: e.g. "1h 30m"
    """
    if not end_time:
        end_time = utcnow()

    total_minutes = int((end_time - start_time).total_seconds() / 60)
    if total_minutes <= 0:
        return "0h 0m"
    return f"{total_minutes // 60}h {total_minutes % 60}m"


def not_found(error, message):
    return jsonify({"error": error, "message": message}), 404


# API Routes


api = Blueprint("api", __name__, url_prefix="/api")


@api.errorhandler(ParkingError)
def handle_parking_error(error):
    current_app.logger.info("%s: %s", error.code, error.message)
    return jsonify(error.to_dict()), error.http_status


@api.route("/users", methods=["POST"])
def register_user():
    """Register a customer together with their vehicle."""
    data = json_body()
    vehicle_data = json_object(data.get("vehicle"), "vehicle")

    for field in ("name", "email", "phone"):
        if not str(data.get(field) or "").strip():
            raise ValidationError(f"'{field}' is required.", field=field)
    if not str(vehicle_data.get("model") or "").strip():
        raise ValidationError("'vehicle.model' is required.", field="vehicle.model")

    user = User(
        name=str(data["name"]).strip(),
        email=str(data["email"]).strip().lower(),
        phone=str(data["phone"]).strip(),
    )
    vehicle = Vehicle(
        plate_number=normalize_plate(vehicle_data.get("plate_number")),
        model=str(vehicle_data["model"]).strip(),
        color=vehicle_data.get("color"),
    )

    core = get_core()
    core.repository.register_user(user, vehicle)
    current_app.logger.info("Registered user %s with vehicle %s", user.email, vehicle.plate_number)

    payload = user.to_dict()
    payload["vehicles"] = [vehicle.to_dict()]
    return jsonify(payload), 201


@api.route("/users/<int:user_id>/reservations")
def user_reservations(user_id):
    """Booking history for one customer, newest first."""
    core = get_core()
    if core.repository.find_user(user_id) is None:
        return not_found("user_not_found", f"User {user_id} does not exist.")

    history = []
    for reservation in core.repository.list_reservations(user_id=user_id):
        entry = reservation.to_dict()
        if reservation.actual_entry_time:
            entry["duration_formatted"] = format_duration(
                reservation.actual_entry_time, reservation.actual_exit_time
            )
        payment = core.repository.find_payment_for_reservation(reservation.id)
        entry["payment"] = payment.to_dict() if payment else None
        history.append(entry)
    return jsonify({"reservations": history})


@api.route("/slots")
def list_slots():
    return jsonify({"slots": [slot.to_dict() for slot in get_core().registry.list_slots()]})


@api.route("/slots/available")
def available_slots():
    start_time = parse_datetime(request.args.get("start"), "start")
    end_time = parse_datetime(request.args.get("end"), "end")
    slots = get_core().allocation.find_available_slots(start_time, end_time)
    return jsonify({"slots": [slot.to_dict() for slot in slots]})


@api.route("/reservations", methods=["POST"])
def create_reservation():
    data = json_body()
    user_id = parse_int(data.get("user_id"), "user_id")

    core = get_core()
    if core.repository.find_user(user_id) is None:
        return not_found("user_not_found", f"User {user_id} does not exist.")

    reservation = core.allocation.reserve(
        user_id=user_id,
        vehicle_plate=data.get("vehicle_plate"),
        start_time=parse_datetime(data.get("start_time"), "start_time"),
        end_time=parse_datetime(data.get("end_time"), "end_time"),
        slot_id=parse_int(data.get("slot_id"), "slot_id", required=False),
        confirm=parse_bool(data.get("confirm"), "confirm", default=True),
    )
    return jsonify(reservation.to_dict()), 201


@api.route("/reservations/<int:reservation_id>")
def get_reservation(reservation_id):
    reservation = get_core().repository.find_reservation(reservation_id)
    if reservation is None:
        return not_found("reservation_not_found", f"Reservation {reservation_id} does not exist.")
    return jsonify(reservation.to_dict())


@api.route("/reservations/<int:reservation_id>/confirm", methods=["POST"])
def confirm_reservation(reservation_id):
    return jsonify(get_core().lifecycle.confirm(reservation_id).to_dict())


@api.route("/reservations/<int:reservation_id>/cancel", methods=["POST"])
def cancel_reservation(reservation_id):
    actor_id = json_body().get("actor_id")
    if actor_id is None or str(actor_id).strip() == "":
        raise ValidationError("'actor_id' is required.", field="actor_id")
    return jsonify(get_core().allocation.cancel(reservation_id, actor_id).to_dict())


@api.route("/reservations/<int:reservation_id>/check-in", methods=["POST"])
def check_in(reservation_id):
    return jsonify(get_core().lifecycle.check_in(reservation_id).to_dict())


@api.route("/reservations/<int:reservation_id>/check-out", methods=["POST"])
def check_out(reservation_id):
    result = get_core().lifecycle.check_out(reservation_id)
    return jsonify(result.to_dict())


@api.route("/billing/quote")
def billing_quote():
    """Price a number of hours, or the planned window between start and end."""
    billing = get_core().billing
    if request.args.get("start") or request.args.get("end"):
        hours = billable_hours(
            parse_datetime(request.args.get("start"), "start"),
            parse_datetime(request.args.get("end"), "end"),
        )
    else:
        hours = parse_int(request.args.get("hours"), "hours")
    return jsonify({"hours": hours, "amount": str(billing.compute_amount(hours))})


# Administrative Routes


@api.route("/admin/slots", methods=["POST"])
def provision_slot():
    data = json_body()
    slot = get_core().registry.register_slot(data.get("slot_number"), data.get("level"))
    return jsonify(slot.to_dict()), 201


@api.route("/admin/slots/reconcile", methods=["POST"])
def reconcile_slots():
    corrected = get_core().lifecycle.reconcile_occupancy()
    return jsonify({"corrected": [slot.to_dict() for slot in corrected]})


@api.route("/admin/expire-stale", methods=["POST"])
def expire_stale():
    expired = get_core().lifecycle.expire_stale()
    return jsonify({"expired": [reservation.id for reservation in expired], "count": len(expired)})


@api.route("/admin/stats")
def admin_stats():
    return jsonify(compute_stats(get_core().repository))


# Maintenance Commands


def register_commands(app):
    @app.cli.command("init-db")
    def init_db_command():
        """Create the database tables."""
        create_db(app.extensions["parkit_engine"])
        click.echo("Database initialised.")

    @app.cli.command("add-slots")
    @click.argument("count", type=int)
    @click.option("--level", default="G", help="Level or zone of the new slots.")
    def add_slots_command(count, level):
        """Provision COUNT slots numbered after the existing ones."""
        registry = app.extensions["parkit"].registry
        existing = len(registry.list_slots())
        for number in range(existing + 1, existing + count + 1):
            registry.register_slot(str(number), level)
        click.echo(f"Added {count} slot(s) on level {level}.")

    @app.cli.command("expire-stale")
    def expire_stale_command():
        """Cancel confirmed bookings whose window ended without a check-in."""
        expired = app.extensions["parkit"].lifecycle.expire_stale()
        click.echo(f"Expired {len(expired)} reservation(s).")


# Application Factory


def create_app(config_overrides=None, clock=utcnow):
    """
    Create and configure the Flask application.

    Args:
        config_overrides: mapping applied after defaults and environment
        clock: callable returning the current naive UTC time

    Returns:
        Flask: the configured application
    """
    app = Flask(__name__)
    app.config.from_object(DefaultConfig)
    app.config.from_prefixed_env("PARKIT")
    if config_overrides:
        app.config.update(config_overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"], format=LOG_FORMAT)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    engine = make_engine(app.config["DATABASE_URL"])
    create_db(engine)

    workers = int(app.config.get("NOTIFICATION_WORKERS") or 0)
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") if workers else None

    app.extensions["parkit_engine"] = engine
    app.extensions["parkit_executor"] = executor
    app.extensions["parkit"] = build_core(
        make_session_factory(engine),
        policy=ParkingPolicy.from_config(app.config),
        notifier=Notifier(executor),
        clock=clock,
    )

    app.register_blueprint(api)
    register_commands(app)
    atexit.register(shutdown_app, app)
    return app


def shutdown_app(app):
    """Drain pending notifications and close database connections."""
    executor = app.extensions.pop("parkit_executor", None)
    if executor is not None:
        executor.shutdown(wait=True)
    engine = app.extensions.get("parkit_engine")
    if engine is not None:
        engine.dispose()


# Application Entry Point


if __name__ == "__main__":
    create_app().run(debug=True)
