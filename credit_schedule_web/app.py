"""JSON API around the credit schedule engine.

The endpoints read a credit, its rate history, its principal adjustments and
its payments from the payment store in one session, hand them to the engine
and return the result. All schedule arithmetic happens in ``credit_schedule``;
this module only moves data between HTTP and the engine.
"""

import logging
from datetime import date

from flask import Flask, jsonify, request

from credit_schedule.config import Settings
from credit_schedule.data_models import PaymentStatus
from credit_schedule.engine import (
    amendment_policy,
    apply_amendment,
    bind_rates,
    build_schedule_response,
    check_adjustment,
    check_amendment,
)
from credit_schedule.exceptions import (
    CreditNotFoundError,
    PaymentNotFoundError,
    ScheduleError,
    ScheduleInvariantError,
    ValidationError,
)
from credit_schedule.reconciler import periods_due_on, prepare_bulk_creation, reconcile
from credit_schedule.serializers import (
    adjustment_from_dict,
    adjustment_to_dict,
    adjustments_from_dicts,
    bulk_item_from_dict,
    bulk_item_to_dict,
    changes_from_dict,
    credit_from_dict,
    credit_to_dict,
    payment_to_dict,
    policy_to_dict,
    rate_from_dict,
    rate_to_dict,
    schedule_response_to_dict,
    unprocessed_to_dict,
)
from credit_schedule.utils import end_of_month, parse_iso_date
from credit_schedule_web.payment_store import create_store_from_env

logger = logging.getLogger(__name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _date_param(value, name: str) -> date:
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise ValidationError(str(exc), {"field": name}) from exc


def _today() -> date:
    """Reference date from the ``today`` query parameter, else the server date."""
    value = request.args.get("today")
    if not value:
        return date.today()
    return _date_param(value, "today")


def create_app(settings: Settings = None) -> Flask:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = Flask(__name__)
    store = create_store_from_env(settings.database_url)
    app.config["PAYMENT_STORE"] = store

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        logger.warning("Rejected request to %s: %s", request.path, exc)
        return jsonify({"error": exc.message, "details": exc.details}), 400

    @app.errorhandler(CreditNotFoundError)
    @app.errorhandler(PaymentNotFoundError)
    def handle_not_found(exc: ScheduleError):
        return jsonify({"error": exc.message, "details": exc.details}), 404

    @app.errorhandler(ScheduleInvariantError)
    def handle_invariant_error(exc: ScheduleInvariantError):
        logger.error("Schedule invariant %s failed on %s: %s", exc.invariant, request.path, exc)
        return jsonify({"error": exc.message, "details": exc.details}), 500

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    @app.post("/api/schedule")
    def compute_schedule_endpoint():
        body = _json_body()
        credit, rates = credit_from_dict(body)
        adjustments = adjustments_from_dicts(body.get("adjustments"))
        response = build_schedule_response(credit, rates, adjustments=adjustments)
        return jsonify(schedule_response_to_dict(response))

    @app.post("/api/credits")
    def create_credit():
        body = _json_body()
        credit, rates = credit_from_dict(body)
        adjustments = adjustments_from_dicts(body.get("adjustments"))
        timeline = bind_rates(credit, rates)
        # rejects terms or adjustments that cannot produce a schedule
        build_schedule_response(credit, timeline, adjustments=adjustments)
        credit_id = store.add_credit(credit, timeline.entries, adjustments)
        logger.info("Created credit %s (%r, %s)", credit_id, credit.number, credit.method.value)
        return jsonify(credit_to_dict(credit, credit_id)), 201

    @app.get("/api/credits/<int:credit_id>")
    def get_credit(credit_id: int):
        credit, _, payments, _ = store.load_snapshot(credit_id)
        data = credit_to_dict(credit, credit_id)
        data["amendment"] = policy_to_dict(amendment_policy(credit, payments))
        return jsonify(data)

    @app.patch("/api/credits/<int:credit_id>")
    def amend_credit(credit_id: int):
        changes = changes_from_dict(_json_body())
        credit, rates, payments, adjustments = store.load_snapshot(credit_id)
        amended = apply_amendment(credit, changes, payments, rates)
        new_rates = changes.get("rates")
        timeline = bind_rates(amended, new_rates if new_rates is not None else rates)
        # the amended terms must still produce a schedule around settled periods
        build_schedule_response(amended, timeline, payments, adjustments)
        store.update_credit(credit_id, amended, timeline.entries if new_rates is not None else None)
        logger.info("Amended credit %s: %s", credit_id, ", ".join(sorted(changes)))
        data = credit_to_dict(amended, credit_id)
        data["amendment"] = policy_to_dict(amendment_policy(amended, payments))
        return jsonify(data)

    @app.get("/api/credits/<int:credit_id>/rates")
    def list_rates(credit_id: int):
        return jsonify([rate_to_dict(r) for r in store.list_rates(credit_id)])

    @app.post("/api/credits/<int:credit_id>/rates")
    def add_rate(credit_id: int):
        entry = rate_from_dict(_json_body())
        credit, rates, payments, adjustments = store.load_snapshot(credit_id)
        if not credit.method.is_floating:
            raise ValidationError("Rate history can only grow for floating methods", {"method": credit.method.value})
        check_amendment(credit, {"rates": entry}, payments, rates)
        timeline = bind_rates(credit, rates).with_entry(entry)
        build_schedule_response(credit, timeline, payments, adjustments)
        store.add_rate(credit_id, entry)
        logger.info("Added rate %s effective %s to credit %s", entry.rate, entry.effective_date, credit_id)
        return jsonify(rate_to_dict(entry)), 201

    @app.get("/api/credits/<int:credit_id>/adjustments")
    def list_adjustments(credit_id: int):
        return jsonify([adjustment_to_dict(a) for a in store.list_adjustments(credit_id)])

    @app.post("/api/credits/<int:credit_id>/adjustments")
    def add_adjustment(credit_id: int):
        adjustment = adjustment_from_dict(_json_body())
        credit, rates, payments, adjustments = store.load_snapshot(credit_id)
        check_adjustment(credit, adjustment, payments)
        # the new balance must still amortize over the remaining periods
        build_schedule_response(credit, rates, payments, adjustments + [adjustment])
        store.add_adjustment(credit_id, adjustment)
        logger.info(
            "Added principal adjustment %s effective %s to credit %s",
            adjustment.amount, adjustment.effective_date, credit_id,
        )
        return jsonify(adjustment_to_dict(adjustment)), 201

    @app.get("/api/credits/<int:credit_id>/payments")
    def payment_schedule(credit_id: int):
        credit, rates, payments, adjustments = store.load_snapshot(credit_id)
        response = build_schedule_response(credit, rates, payments, adjustments)
        return jsonify(schedule_response_to_dict(response, credit_id))

    @app.get("/api/credits/<int:credit_id>/payments/recorded")
    def recorded_payments(credit_id: int):
        return jsonify([payment_to_dict(p) for p in store.list_payments(credit_id)])

    @app.get("/api/credits/<int:credit_id>/payments/unprocessed")
    def unprocessed_payments(credit_id: int):
        today = _today()
        credit, rates, payments, adjustments = store.load_snapshot(credit_id)
        response = build_schedule_response(credit, rates, payments, adjustments)
        periods = reconcile(response.schedule, payments, today, through=end_of_month(today))
        return jsonify([unprocessed_to_dict(p) for p in periods])

    @app.post("/api/credits/<int:credit_id>/payments/bulk")
    def bulk_create_payments(credit_id: int):
        raw = _json_body().get("payments")
        if not isinstance(raw, list) or not raw:
            raise ValidationError("payments array is required")
        items = [bulk_item_from_dict(p) for p in raw]
        store.get_credit(credit_id)
        created = store.create_payments(credit_id, items)
        logger.info("Bulk creation for credit %s: %d of %d created", credit_id, created, len(items))
        return jsonify({"message": "Bulk creation completed", "createdCount": created, "totalCount": len(items)})

    @app.post("/api/credits/<int:credit_id>/payments/generate")
    def generate_payments(credit_id: int):
        body = request.get_json(silent=True) or {}
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        today = _today()
        credit, rates, payments, adjustments = store.load_snapshot(credit_id)
        schedule = build_schedule_response(credit, rates, payments, adjustments).schedule
        period_numbers = body.get("periodNumbers")
        if period_numbers:
            try:
                wanted = {int(n) for n in period_numbers}
            except (TypeError, ValueError) as exc:
                raise ValidationError("periodNumbers must be a list of integers", {"field": "periodNumbers"}) from exc
            schedule = [item for item in schedule if item.period_number in wanted]
            through = None
        elif body.get("dueOn"):
            schedule = periods_due_on(schedule, _date_param(body["dueOn"], "dueOn"))
            through = None
        else:
            through = end_of_month(today)
        periods = reconcile(schedule, payments, today, through=through)
        items = prepare_bulk_creation(periods)
        created = store.create_payments(credit_id, items)
        logger.info("Generated %d payments for credit %s", created, credit_id)
        return jsonify(
            {"createdCount": created, "totalCount": len(items), "payments": [bulk_item_to_dict(i) for i in items]}
        )

    @app.put("/api/credits/<int:credit_id>/payments/<int:period_number>/status")
    def update_payment_status(credit_id: int, period_number: int):
        status = PaymentStatus.parse(_json_body().get("status"))
        store.set_payment_status(credit_id, period_number, status)
        return jsonify({"periodNumber": period_number, "status": status.value})

    return app


if __name__ == "__main__":
    print("Starting credit schedule API...")
    create_app().run(host="0.0.0.0", port=8710, debug=True)
