"""
BOXENGINE — Provably Fair & Box Config API

Flask blueprint: /api/*
Seeds, rounds and verification (fairness_routes) plus the RTP auto-config
and tier table endpoints (box_routes).
"""

from flask import Blueprint

api_bp = Blueprint("api", __name__, url_prefix="/api")

from api import errors  # noqa: E402, F401
from api import fairness_routes  # noqa: E402, F401
from api import box_routes  # noqa: E402, F401
