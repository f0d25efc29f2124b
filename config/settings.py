"""
BOXENGINE - Configuration

Provably fair constants, RTP solver tuning, and server settings.
Every value that operators may want to change reads from the environment
(a local .env is loaded first); the rest are protocol constants that must
stay fixed because changing them changes externally verifiable tickets.
"""

import os
from dotenv import load_dotenv

load_dotenv()


# ============================================================
# PROVABLY FAIR PROTOCOL
#
# Ticket = (int(SHA-256("{client}:{server}:{nonce}")[:13], 16) % 1_000_000) + 1
# These are part of the public verification contract. Players re-derive
# tickets with the same numbers, so they are NOT environment-driven.
# ============================================================

class FairnessConfig:

    TOTAL_TICKETS = 1_000_000      # Tickets run 1..TOTAL_TICKETS inclusive
    TICKET_HEX_CHARS = 13          # 52 bits, exact in a double on the JS side
    SEPARATOR = ":"                # Unescaped: "a:b"+"c" and "a"+"b:c" collide

    SERVER_SEED_BYTES = 32         # 256 bits of entropy
    CLIENT_SEED_BYTES = 16


# ============================================================
# RTP SOLVER
#
# Bucketing: items sorted by effective value (value_cost or price),
# top 5% jackpot, next 15% rare, next 30% mid, rest common.
# Probabilities: closed-form mix of a volatility template with the
# uniform (max EV) or floor (min EV) distribution.
# ============================================================

class SolverConfig:

    DEFAULT_TARGET_RTP = float(os.getenv("DEFAULT_TARGET_RTP", "0.30"))
    DEFAULT_VOLATILITY = os.getenv("DEFAULT_VOLATILITY", "medium")

    RTP_TOLERANCE = 0.005            # |actual - target| must stay below this
    PROBABILITY_TOLERANCE = 1e-9     # |sum(p) - 1| must stay below this

    # Lowest probability a populated premium tier may be given
    MIN_TIER_PROBABILITY = float(os.getenv("MIN_TIER_PROBABILITY", "0.0001"))

    # Tier order is rarity order: common is the most likely outcome
    TIER_ORDER = ("common", "mid", "rare", "jackpot")

    # Share of the catalogue (by value rank, highest first)
    TIER_THRESHOLDS = {
        "jackpot": 0.05,
        "rare":    0.15,
        "mid":     0.30,
    }

    TIER_COLORS = {
        "common":  "#6B7280",
        "mid":     "#3B82F6",
        "rare":    "#A855F7",
        "jackpot": "#F59E0B",
    }

    TIER_DISPLAY_NAMES = {
        "common":  "Common",
        "mid":     "Premium",
        "rare":    "Epic",
        "jackpot": "Legendary",
    }

    # Starting shape per volatility profile, strictly decreasing.
    # Renormalized over whichever tiers a box actually populates.
    VOLATILITY_TEMPLATES = {
        "low":    {"common": 0.80, "mid": 0.16, "rare": 0.035, "jackpot": 0.005},
        "medium": {"common": 0.85, "mid": 0.12, "rare": 0.025, "jackpot": 0.005},
        "high":   {"common": 0.90, "mid": 0.08, "rare": 0.017, "jackpot": 0.003},
    }

    @classmethod
    def template(cls, volatility: str) -> dict:
        """Return the probability template for a volatility profile."""
        key = (volatility or cls.DEFAULT_VOLATILITY).lower()
        if key not in cls.VOLATILITY_TEMPLATES:
            raise ValueError(
                f"Unknown volatility: {volatility}. "
                f"Available: {list(cls.VOLATILITY_TEMPLATES)}"
            )
        return cls.VOLATILITY_TEMPLATES[key]


# ============================================================
# SERVER
# ============================================================

class ServerConfig:

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    DEBUG = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # History endpoints never return more than this many rows
    MAX_HISTORY = int(os.getenv("MAX_HISTORY", "100"))
