"""
BOXENGINE — Provably Fair Routes

Seed pair life cycle, round play and verification. Active server seeds never
leave these endpoints; only their hashes do.
"""

from flask import Response, jsonify, request

from api import api_bp
from api.errors import error_response, get_ledger
from config.box_schema import ErrorKind, VerifyRequest
from tools.provably_fair import (
    OutcomeVerifier, RoundRecord, SeedState, demo_round, generate_verification_js,
)

_verifier = OutcomeVerifier()


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ═══════════════════════════════════════════════════════════
# Seed pairs
# ═══════════════════════════════════════════════════════════

@api_bp.route("/seeds/<user_id>", methods=["GET"])
def api_get_seeds(user_id):
    pair = get_ledger().get_active(user_id)
    return jsonify(pair.public_view())


@api_bp.route("/seeds/<user_id>", methods=["POST"])
def api_issue_seeds(user_id):
    pair = get_ledger().issue(user_id, _json_body().get("client_seed"))
    return jsonify(pair.public_view()), 201


@api_bp.route("/seeds/<user_id>/rotate", methods=["POST"])
def api_rotate_seeds(user_id):
    return jsonify(get_ledger().rotate(user_id).to_dict())


@api_bp.route("/seeds/<user_id>/client-seed", methods=["PUT"])
def api_set_client_seed(user_id):
    ledger = get_ledger()
    ledger.set_client_seed(user_id, _json_body().get("client_seed"))
    return jsonify({"ok": True, "active": ledger.get_active(user_id).public_view()})


@api_bp.route("/seeds/<user_id>/history")
def api_seed_history(user_id):
    limit = request.args.get("limit", type=int)
    pairs = get_ledger().history(user_id, limit)
    return jsonify({"user_id": user_id, "history": [p.public_view() for p in pairs]})


# ═══════════════════════════════════════════════════════════
# Rounds
# ═══════════════════════════════════════════════════════════

@api_bp.route("/seeds/<user_id>/rounds", methods=["POST"])
def api_play_round(user_id):
    """Commit one box opening. First play for a user issues their seed pair."""
    ledger = get_ledger()
    ledger.ensure_active(user_id)
    record = ledger.play_round(user_id)
    return jsonify(record.to_dict()), 201


@api_bp.route("/demo/rounds", methods=["POST"])
def api_demo_round():
    """Guest round on throwaway seeds. Nothing is stored; the seed comes back revealed."""
    record = demo_round(_json_body().get("client_seed"))
    return jsonify({"round": record.to_dict(), "verification": _verifier.verify(record).to_dict()})


@api_bp.route("/rounds/<round_id>/verify")
def api_verify_round(round_id):
    record = get_ledger().revealed_round(round_id)
    result = _verifier.verify(record)
    return jsonify({"round": record.to_dict(), "verification": result.to_dict()})


@api_bp.route("/seed-pairs/<pair_id>/audit")
def api_audit_pair(pair_id):
    ledger = get_ledger()
    pair = ledger.get_pair(pair_id)
    if pair.state is not SeedState.REVEALED:
        return error_response(ErrorKind.NOT_REVEALED,
                              f"Seed pair {pair_id} is still active; rotate it to audit")
    return jsonify(_verifier.audit_report(pair, ledger.rounds_for_pair(pair_id)))


# ═══════════════════════════════════════════════════════════
# Independent verification
# ═══════════════════════════════════════════════════════════

@api_bp.route("/verify", methods=["POST"])
def api_verify():
    """Check a round from its raw values. Always 200; validity is in the body."""
    req = VerifyRequest.model_validate(_json_body())
    result = _verifier.verify(RoundRecord(
        client_seed=req.client_seed,
        server_seed_hash=req.server_seed_hash,
        nonce=req.nonce,
        claimed_ticket=req.ticket,
        server_seed=req.server_seed,
    ))
    return jsonify(result.to_dict())


@api_bp.route("/verify.js")
def api_verify_js():
    return Response(generate_verification_js(), mimetype="application/javascript")
