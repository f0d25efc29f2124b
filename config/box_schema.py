"""
BOXENGINE — Box Configuration Schema

Pydantic models for the RTP solver's input and output, plus the error
taxonomy shared by the fairness core, the ledger and the HTTP surface.

Usage:
    from config.box_schema import ConfigItem, AutoConfigRequest, AutoConfigResult
    req = AutoConfigRequest(items=[ConfigItem(id="a", name="Cap", price=10)], box_price=100)
    json_str = result.model_dump_json(indent=2)
"""

from __future__ import annotations
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from config.settings import SolverConfig


# ═══════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════

class ErrorKind(str, Enum):
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    NOT_FOUND = "NOT_FOUND"
    NOT_REVEALED = "NOT_REVEALED"
    INVALID_INPUT = "INVALID_INPUT"
    SEED_SUBSTITUTED = "SEED_SUBSTITUTED"
    TICKET_MISMATCH = "TICKET_MISMATCH"
    INFEASIBLE = "INFEASIBLE"
    HASH_FAILURE = "HASH_FAILURE"


class Volatility(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TierName(str, Enum):
    COMMON = "common"
    MID = "mid"
    RARE = "rare"
    JACKPOT = "jackpot"


# ═══════════════════════════════════════════════════════════════
# Solver Input
# ═══════════════════════════════════════════════════════════════

class ConfigItem(BaseModel):
    """A catalogue item as the solver sees it."""
    id: str
    name: str = ""
    price: float                          # Nominal catalogue price
    value_cost: Optional[float] = None    # Real cost to the house; falls back to price
    odds: float = 0.0                     # Draw weight used elsewhere; informational here

    @property
    def effective_value(self) -> float:
        return self.value_cost if self.value_cost is not None else self.price


class AutoConfigRequest(BaseModel):
    """Body of the auto-config endpoint / CLI input file."""
    items: list[ConfigItem] = Field(default_factory=list)
    box_price: float
    target_rtp: float = SolverConfig.DEFAULT_TARGET_RTP
    volatility: Volatility = Volatility.MEDIUM

    @field_validator("volatility", mode="before")
    @classmethod
    def _lower_volatility(cls, v):
        return v.lower() if isinstance(v, str) else v


# ═══════════════════════════════════════════════════════════════
# Solver Output
# ═══════════════════════════════════════════════════════════════

class TierAllocation(BaseModel):
    """One prize tier of a solved box."""
    tier_name: TierName
    display_name: str
    color: str
    probability: float                    # 0-1
    items: list[ConfigItem] = Field(default_factory=list)
    avg_value: float = 0.0
    ev_contribution: float = 0.0          # probability × avg_value


class AutoConfigResult(BaseModel):
    """Full solver output. success=False carries error + error_kind."""
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    tiers: list[TierAllocation] = Field(default_factory=list)
    total_ev: float = 0.0
    actual_rtp: float = 0.0
    house_edge: float = 0.0
    box_price: float = 0.0
    target_rtp: float = 0.0
    volatility: Volatility = Volatility.MEDIUM


# ═══════════════════════════════════════════════════════════════
# Verification Input
# ═══════════════════════════════════════════════════════════════

class VerifyRequest(BaseModel):
    """A round as an auditor submits it after the server seed is revealed."""
    client_seed: str
    server_seed: str
    server_seed_hash: str
    nonce: int = Field(ge=0)
    ticket: int
