"""
BOXENGINE — Prize Tier Store

Persists a solved tier table per box. The play resolver reads these rows;
saving replaces the whole table for a box in one transaction so a reader
never sees half of an old table mixed with half of a new one.
"""

import json
import logging
import uuid

from config.box_schema import AutoConfigResult, ErrorKind
from config.database import get_standalone_db
from tools.provably_fair import FairnessError, utc_now

logger = logging.getLogger("boxengine.solver")


def save_tier_table(box_id: str, result: AutoConfigResult, db=None) -> list[dict]:
    """Replace the tier rows of a box with a successful solver result."""
    if not box_id:
        raise FairnessError(ErrorKind.INVALID_INPUT, "box_id is required")
    if not result.success:
        raise FairnessError(ErrorKind.INVALID_INPUT,
                            f"Refusing to store an unsuccessful config: {result.error}")

    own = db is None
    db = db or get_standalone_db()
    try:
        now = utc_now()
        with db.transaction():
            db.execute("DELETE FROM prize_tiers WHERE box_id = ?", [box_id])
            for order, tier in enumerate(result.tiers):
                db.execute(
                    "INSERT INTO prize_tiers (id, box_id, tier_name, display_name, color_hex, "
                    "probability, avg_value, ev_contribution, item_ids, sort_order, target_rtp, "
                    "created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                    [uuid.uuid4().hex, box_id, tier.tier_name.value, tier.display_name,
                     tier.color, tier.probability, tier.avg_value, tier.ev_contribution,
                     json.dumps([it.id for it in tier.items]), order, result.target_rtp, now],
                )
        logger.info(f"Stored {len(result.tiers)} tiers for box {box_id} "
                    f"(RTP {result.actual_rtp:.4%})")
        return load_tier_table(box_id, db=db)
    finally:
        if own:
            db.close()


def load_tier_table(box_id: str, db=None) -> list[dict]:
    """Tier rows of a box in rarity order (common first). Empty list if none."""
    own = db is None
    db = db or get_standalone_db()
    try:
        rows = db.execute(
            "SELECT * FROM prize_tiers WHERE box_id = ? ORDER BY sort_order", [box_id]
        ).fetchall()
    finally:
        if own:
            db.close()

    for row in rows:
        row["item_ids"] = json.loads(row["item_ids"]) if row.get("item_ids") else []
    return rows
