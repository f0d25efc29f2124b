"""
BOXENGINE — Box Config Routes

RTP auto-config for a box and its stored tier table.
"""

from flask import jsonify, request

from api import api_bp
from api.errors import STATUS_FOR_KIND
from config.box_schema import AutoConfigRequest
from config.database import get_db
from tools.rtp_solver import RTPSolver, rtp_proof
from tools.tier_store import load_tier_table, save_tier_table

_solver = RTPSolver()


@api_bp.route("/boxes/<box_id>/auto-config", methods=["POST"])
def api_auto_config(box_id):
    """Solve tier probabilities for a box. ?apply=1 also stores the table."""
    req = AutoConfigRequest.model_validate(request.get_json(silent=True) or {})
    result = _solver.solve_request(req)
    body = {"box_id": box_id, **result.model_dump(mode="json")}

    if not result.success:
        body["kind"] = result.error_kind.value
        return jsonify(body), STATUS_FOR_KIND.get(result.error_kind, 400)

    body["proof"] = rtp_proof(result)
    if request.args.get("apply", "").lower() in ("1", "true", "yes"):
        body["stored"] = save_tier_table(box_id, result, db=get_db())
    return jsonify(body)


@api_bp.route("/boxes/<box_id>/tiers")
def api_box_tiers(box_id):
    return jsonify({"box_id": box_id, "tiers": load_tier_table(box_id, db=get_db())})
