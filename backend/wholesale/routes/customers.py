# Overview: Flask API routes for customer credit accounts; parses input and returns JSON responses.

"""
Customer Credit API Routes

WHY: Expose the credit ledger to the back office. Staff read balances and
history; admins record payments, manual charges and adjustments, change
limits and holds, and reconcile frozen accounts.

SECURITY:
- staff/admin role required for reads
- admin role required for every write
- processed_by on each ledger row is the authenticated actor
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role, ROLE_ADMIN, ROLE_STAFF
from ..errors import error_response
from ..models import PaymentMethod
from ..services import ledger_service
from ..validation import (
    ValidationError,
    parse_bool,
    parse_cents,
    parse_enum,
    parse_int,
    parse_text,
    require_json,
)


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


# =============================================================================
# ACCOUNT READS
# =============================================================================

@customers_bp.get("/<int:customer_id>/balance")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def get_balance_route(customer_id: int):
    """
    Account summary: limit, balance, owed, available and flags.

    Returns:
        200: Summary
        404: Unknown customer
        500: Ledger corruption (incident reference only)
    """
    try:
        result = ledger_service.get_account_summary(customer_id)
        if not result.ok:
            return error_response(result.error)
        return jsonify(result.value), 200
    except Exception:
        current_app.logger.exception("Failed to load balance")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/history")
@require_auth
@require_role(ROLE_STAFF, ROLE_ADMIN)
def get_history_route(customer_id: int):
    """
    Transaction history, newest first.

    Query params:
        page_token: opaque token from a previous page
        limit: 1..500 (default 50)
    """
    try:
        limit = parse_int(request.args.get("limit"), "limit", required=False) or 50
        result = ledger_service.get_history(
            customer_id,
            page_token=request.args.get("page_token") or None,
            limit=limit,
        )
        if not result.ok:
            return error_response(result.error)
        return jsonify(result.value.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to load history")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ACCOUNT SETTINGS (admin)
# =============================================================================

@customers_bp.put("/<int:customer_id>/credit-limit")
@require_auth
@require_role(ROLE_ADMIN)
def set_credit_limit_route(customer_id: int):
    """
    Request body:
    {
        "credit_limit_cents": 50000
    }
    """
    try:
        data = require_json(request.get_json(silent=True))
        limit = parse_cents(data.get("credit_limit_cents"), "credit_limit_cents", allow_zero=True)
        result = ledger_service.set_credit_limit(customer_id, limit, g.actor_id)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"customer": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set credit limit")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.put("/<int:customer_id>/credit-hold")
@require_auth
@require_role(ROLE_ADMIN)
def set_credit_hold_route(customer_id: int):
    try:
        data = require_json(request.get_json(silent=True))
        on_hold = parse_bool(data.get("on_credit_hold"), "on_credit_hold")
        result = ledger_service.set_credit_hold(customer_id, on_hold, g.actor_id)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"customer": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set credit hold")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# LEDGER WRITES (admin)
# =============================================================================

@customers_bp.post("/<int:customer_id>/payments")
@require_auth
@require_role(ROLE_ADMIN)
def record_payment_route(customer_id: int):
    """
    Record a payment received against the account.

    Request body:
    {
        "amount_cents": 10000,
        "method": "cash" | "check" | "electronic",
        "check_number": "1042",  (required for check)
        "notes": "..."  (optional)
    }

    Returns:
        201: Payment recorded, with the updated account summary
        400: Invalid input, missing check number, or overpayment when disallowed
    """
    try:
        data = require_json(request.get_json(silent=True))
        amount = parse_cents(data.get("amount_cents"), "amount_cents")
        method = parse_enum(PaymentMethod, data.get("method"), "method")
        check_number = parse_text(data.get("check_number"), "check_number", max_length=64)
        notes = parse_text(data.get("notes"), "notes", max_length=2000)

        result = ledger_service.apply_payment(
            customer_id,
            amount,
            method,
            g.actor_id,
            reference_number=check_number,
            notes=notes,
            allow_overpayment=current_app.config.get("ALLOW_CREDIT_OVERPAYMENT", True),
        )
        if not result.ok:
            return error_response(result.error)
        return _txn_response(customer_id, result.value), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.post("/<int:customer_id>/charges")
@require_auth
@require_role(ROLE_ADMIN)
def manual_charge_route(customer_id: int):
    """
    Manual charge (balance decreases).

    Request body:
    {
        "amount_cents": 2500,
        "description": "Returned check fee",
        "order_id": 12,  (optional)
        "override": false  (optional; skips limit and hold checks)
    }
    """
    try:
        data = require_json(request.get_json(silent=True))
        amount = parse_cents(data.get("amount_cents"), "amount_cents")
        description = parse_text(data.get("description"), "description", required=True)
        order_id = parse_int(data.get("order_id"), "order_id", required=False)
        override = parse_bool(data.get("override", False), "override")

        result = ledger_service.apply_charge(
            customer_id,
            amount,
            order_id,
            g.actor_id,
            override=override,
            description=description,
        )
        if not result.ok:
            return error_response(result.error)
        return _txn_response(customer_id, result.value), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to post manual charge")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.post("/<int:customer_id>/adjustments")
@require_auth
@require_role(ROLE_ADMIN)
def adjustment_route(customer_id: int):
    """
    Signed correction. Positive credits the customer, negative debits.

    Request body:
    {
        "amount_cents": -500,
        "description": "Correct double-entered payment"
    }
    """
    try:
        data = require_json(request.get_json(silent=True))
        amount = parse_cents(data.get("amount_cents"), "amount_cents", allow_negative=True)
        description = parse_text(data.get("description"), "description", required=True)

        result = ledger_service.apply_adjustment(customer_id, amount, description, g.actor_id)
        if not result.ok:
            return error_response(result.error)
        return _txn_response(customer_id, result.value), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to post adjustment")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.post("/<int:customer_id>/reconcile")
@require_auth
@require_role(ROLE_ADMIN)
def reconcile_route(customer_id: int):
    """Rebuild the cached balance from the log and lift a corruption freeze."""
    try:
        data = require_json(request.get_json(silent=True))
        note = parse_text(data.get("note"), "note", required=True, max_length=2000)
        result = ledger_service.reconcile(customer_id, g.actor_id, note)
        if not result.ok:
            return error_response(result.error)
        return jsonify({"customer": result.value.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to reconcile ledger")
        return jsonify({"error": "Internal server error"}), 500


def _txn_response(customer_id: int, txn):
    summary = ledger_service.get_account_summary(customer_id)
    return jsonify({
        "transaction": txn.to_dict(),
        "summary": summary.value if summary.ok else None,
    })
