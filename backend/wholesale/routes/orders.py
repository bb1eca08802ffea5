# Overview: Flask API routes for orders; quoting, creation, status changes and settlement.

"""
Order API Routes

DESIGN:
- quote: breakdown only, nothing is stored
- create: breakdown frozen on a pending order
- status: fulfilment steps (processing/ready/shipped/delivered)
- complete: records payment; account_credit posts the ledger charge atomically
- cancel: refunds any posted charge and returns reserved loyalty points
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role, ROLE_ADMIN, ROLE_STAFF
from ..errors import error_response
from ..models import OrderType
from ..services import order_service
from ..validation import (
    ValidationError,
    parse_enum,
    parse_int,
    parse_order_lines,
    parse_text,
    require_json,
)


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _order_inputs(data: dict):
    customer_id = parse_int(data.get("customer_id"), "customer_id")
    lines = parse_order_lines(data.get("items"))
    order_type = parse_enum(OrderType, data.get("order_type"), "order_type").value
    redeem_points = parse_int(data.get("redeem_points"), "redeem_points", required=False) or 0
    if redeem_points < 0:
        raise ValidationError("redeem_points cannot be negative")
    return customer_id, lines, order_type, redeem_points


@orders_bp.post("/quote")
@require_auth
def quote_order_route():
    """
    Price a prospective order without storing it.

    Request body:
    {
        "customer_id": 1,
        "order_type": "delivery" | "pickup",
        "items": [{"product_id": 5, "quantity": 3}],
        "redeem_points": 0  (optional)
    }
    """
    try:
        data = require_json(request.get_json(silent=True))
        customer_id, lines, order_type, redeem_points = _order_inputs(data)
        result = order_service.quote_order(customer_id, lines, order_type, redeem_points)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"breakdown": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to quote order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def create_order_route():
    """Same body as /quote plus optional notes. Returns 201 with the pending order."""
    try:
        data = require_json(request.get_json(silent=True))
        customer_id, lines, order_type, redeem_points = _order_inputs(data)
        notes = parse_text(data.get("notes"), "notes", max_length=2000)
        result = order_service.create_order(
            customer_id, lines, order_type, g.actor_id,
            redeem_points=redeem_points, notes=notes,
        )
        if not result.ok:
            return error_response(result.error)
        return jsonify({"order": result.value.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def get_order_route(order_id: int):
    result = order_service.get_order(order_id)
    if not result.ok:
        return error_response(result.error)
    return jsonify({"order": result.value.to_dict()}), 200


@orders_bp.post("/<int:order_id>/status")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def advance_status_route(order_id: int):
    """
    Request body:
    {
        "status": "processing" | "ready" | "shipped" | "delivered"
    }
    """
    try:
        data = require_json(request.get_json(silent=True))
        status = parse_text(data.get("status"), "status", required=True, max_length=16).lower()
        result = order_service.advance_status(order_id, status, g.actor_id)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"order": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to change order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/recalculate")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def recalculate_order_route(order_id: int):
    try:
        result = order_service.recalculate_order(order_id, g.actor_id)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"order": result.value.to_dict()}), 200
    except Exception:
        current_app.logger.exception("Failed to recalculate order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/complete")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def complete_order_route(order_id: int):
    """
    Request body:
    {
        "payment_method": "cash" | "check" | "credit" | "account_credit",
        "check_number": "1042",  (required for check)
        "notes": "..."  (optional)
    }

    Returns:
        200: Completed (also when it was already completed)
        409: Insufficient credit, invalid transition, or already settled
    """
    try:
        data = require_json(request.get_json(silent=True))
        payment_method = parse_text(data.get("payment_method"), "payment_method", required=True, max_length=32)
        check_number = parse_text(data.get("check_number"), "check_number", max_length=64)
        notes = parse_text(data.get("notes"), "notes", max_length=2000)
        result = order_service.complete_order(
            order_id, payment_method, g.actor_id,
            check_number=check_number, notes=notes,
        )
        if not result.ok:
            return error_response(result.error)
        return jsonify({"order": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to complete order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def cancel_order_route(order_id: int):
    try:
        data = require_json(request.get_json(silent=True))
        reason = parse_text(data.get("reason"), "reason", max_length=255)
        result = order_service.cancel_order(order_id, g.actor_id, reason)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"order": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
