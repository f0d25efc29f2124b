"""
BOXENGINE — API error mapping

Every recoverable failure carries an ErrorKind; this is the one place that
turns a kind into an HTTP status. HashFailure is deliberately absent: it is a
RuntimeError and surfaces as a 500.
"""

import logging

from flask import current_app, jsonify
from pydantic import ValidationError

from api import api_bp
from config.box_schema import ErrorKind
from tools.provably_fair import FairnessError
from tools.seed_ledger import SeedLedger

logger = logging.getLogger("boxengine.api")

STATUS_FOR_KIND = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_ACTIVE: 409,
    ErrorKind.NOT_REVEALED: 409,
    ErrorKind.INFEASIBLE: 422,
}


def error_response(kind: ErrorKind, message: str):
    return jsonify({"error": message, "kind": kind.value}), STATUS_FOR_KIND.get(kind, 400)


def get_ledger() -> SeedLedger:
    """The app's SeedLedger, created on first use with the app's DB factory."""
    ledger = current_app.extensions.get("seed_ledger")
    if ledger is None:
        ledger = SeedLedger(db_factory=current_app.config.get("DB_FACTORY"))
        current_app.extensions["seed_ledger"] = ledger
    return ledger


@api_bp.errorhandler(FairnessError)
def handle_fairness_error(e: FairnessError):
    if e.kind not in (ErrorKind.NOT_FOUND, ErrorKind.INVALID_INPUT):
        logger.info(f"{e.kind.value}: {e.message}")
    return error_response(e.kind, e.message)


@api_bp.errorhandler(ValidationError)
def handle_validation_error(e: ValidationError):
    first = e.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ())) or "body"
    return error_response(ErrorKind.INVALID_INPUT, f"{where}: {first['msg']}")
