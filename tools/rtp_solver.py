"""
BOXENGINE — RTP Allocation Solver

Turns a box's item catalogue into prize-tier probabilities whose expected
payout hits a target return-to-player ratio.

Pipeline:
    items ──► sort by effective value ──► percentile tiers ──► probabilities
                                                                  │
    D = volatility template (strictly decreasing, common → jackpot)
    U = uniform            (highest EV any non-increasing assignment reaches)
    L = floor              (premium tiers at MIN_TIER_PROBABILITY, rest common)

    T = target_rtp × box_price
    T ≥ EV(D)  →  p = (1 - t)·D + t·U,  t = (T - EV(D)) / (EV(U) - EV(D))
    T <  EV(D) →  p = (1 - t)·D + t·L,  t = (EV(D) - T) / (EV(D) - EV(L))

A convex mix of non-increasing, positive distributions is itself
non-increasing, positive and sums to 1, so every law holds by construction
and the target is hit exactly rather than approached iteratively.

Usage:
    from tools.rtp_solver import RTPSolver
    result = RTPSolver().solve(items, box_price=100, target_rtp=0.30, volatility="medium")
    if result.success:
        for tier in result.tiers:
            print(tier.tier_name, tier.probability)
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Union

from pydantic import ValidationError

from config.box_schema import (
    AutoConfigRequest, AutoConfigResult, ConfigItem, ErrorKind,
    TierAllocation, TierName, Volatility,
)
from config.settings import SolverConfig

logger = logging.getLogger("boxengine.solver")


# ═══════════════════════════════════════════════════════════════
# Formatting helpers
# ═══════════════════════════════════════════════════════════════

def format_probability(p: float) -> str:
    """0.0202 → '2.02%', 0.00005 → '0.0050%'."""
    pct = p * 100
    if pct >= 1:
        return f"{pct:.2f}%"
    return f"{pct:.4f}%"


def format_currency(value: float) -> str:
    return f"${value:,.2f}"


# ═══════════════════════════════════════════════════════════════
# Bucketing
# ═══════════════════════════════════════════════════════════════

def _share(n: int, fraction: float) -> int:
    """ceil(n × fraction), at least 1. Rounded first so 20 × 0.05 is exactly 1."""
    return max(1, math.ceil(round(n * fraction, 9)))


def bucket_items(items: list[ConfigItem]) -> dict[str, list[ConfigItem]]:
    """Split items into rarity tiers by effective value, highest first.

    Small catalogues cannot fill four tiers, so:
        1 item   → common
        2 items  → jackpot + common
        3-4      → jackpot, mid, rest common
        5+       → top 5% jackpot, next 15% rare, next 30% mid, rest common
    Empty tiers are omitted.
    """
    ranked = sorted(items, key=lambda it: (-it.effective_value, it.id))
    n = len(ranked)

    if n == 1:
        return {"common": ranked}
    if n == 2:
        return {"common": ranked[1:], "jackpot": ranked[:1]}
    if n <= 4:
        return {"common": ranked[2:], "mid": ranked[1:2], "jackpot": ranked[:1]}

    th = SolverConfig.TIER_THRESHOLDS
    n_jackpot = _share(n, th["jackpot"])
    n_rare = _share(n, th["rare"])
    n_mid = _share(n, th["mid"])

    jackpot = ranked[:n_jackpot]
    rare = ranked[n_jackpot:n_jackpot + n_rare]
    mid = ranked[n_jackpot + n_rare:n_jackpot + n_rare + n_mid]
    common = ranked[n_jackpot + n_rare + n_mid:]
    buckets = {"common": common, "mid": mid, "rare": rare, "jackpot": jackpot}
    return {name: members for name, members in buckets.items() if members}


# ═══════════════════════════════════════════════════════════════
# Solver
# ═══════════════════════════════════════════════════════════════

def _ev(probs: list[float], values: list[float]) -> float:
    return sum(p * v for p, v in zip(probs, values))


def _mix(a: list[float], b: list[float], t: float) -> list[float]:
    return [(1 - t) * x + t * y for x, y in zip(a, b)]


class RTPSolver:
    """Stateless: the same inputs always produce bit-identical tables."""

    def solve(self, items: list, box_price: float, target_rtp: float,
              volatility: Union[str, Volatility] = SolverConfig.DEFAULT_VOLATILITY) -> AutoConfigResult:
        volatility = getattr(volatility, "value", volatility)
        base = {"box_price": _as_float(box_price), "target_rtp": _as_float(target_rtp)}

        # ── Validate ──
        problem, parsed, profile = self._validate(items, box_price, target_rtp, volatility)
        if problem:
            logger.info(f"Rejected auto-config: {problem}")
            return AutoConfigResult(success=False, error=problem,
                                    error_kind=ErrorKind.INVALID_INPUT, **base)
        template = SolverConfig.template(profile)

        # ── Bucket ──
        buckets = bucket_items(parsed)
        names = [name for name in SolverConfig.TIER_ORDER if name in buckets]
        values = [sum(it.effective_value for it in buckets[name]) / len(buckets[name])
                  for name in names]
        target_ev = target_rtp * box_price
        k = len(names)

        def fail(message: str) -> AutoConfigResult:
            logger.info(f"Infeasible auto-config: {message}")
            return AutoConfigResult(success=False, error=message, error_kind=ErrorKind.INFEASIBLE,
                                    volatility=profile, **base)

        # ── Reference distributions ──
        raw = [template[name] for name in names]
        d = [x / sum(raw) for x in raw]
        u = [1.0 / k] * k
        floor = SolverConfig.MIN_TIER_PROBABILITY
        low = [1.0 - (k - 1) * floor] + [floor] * (k - 1)

        ev_d, ev_u, ev_l = _ev(d, values), _ev(u, values), _ev(low, values)
        min_rtp, max_rtp = ev_l / box_price, ev_u / box_price
        reach = f"reachable RTP range {min_rtp:.2%} – {max_rtp:.2%}"

        if ev_u - ev_l <= 1e-12 * max(1.0, ev_u):
            # One tier, or every tier worth the same: EV is fixed by the catalogue
            if abs(ev_u / box_price - target_rtp) >= SolverConfig.RTP_TOLERANCE:
                return fail(
                    f"All items share the same average value {format_currency(values[0])}, "
                    f"so RTP is fixed at {max_rtp:.2%} and cannot reach {target_rtp:.2%}"
                )
            probs = d
        elif target_rtp - max_rtp > 1e-12:
            return fail(
                f"Target RTP {target_rtp:.2%} is above the maximum, even with uniform tiers "
                f"({reach}); add higher-value items or lower the box price"
            )
        elif min_rtp - target_rtp > 1e-12:
            return fail(
                f"Target RTP {target_rtp:.2%} is below the minimum, even with premium tiers "
                f"at {format_probability(floor)} ({reach}); add cheaper items or raise the box price"
            )
        elif target_ev >= ev_d:
            span = ev_u - ev_d
            t = 0.0 if span <= 0 else min(1.0, (target_ev - ev_d) / span)
            probs = _mix(d, u, t)
        else:
            t = min(1.0, (ev_d - target_ev) / (ev_d - ev_l))
            probs = _mix(d, low, t)

        total = sum(probs)
        probs = [p / total for p in probs]

        # ── Assemble ──
        tiers = []
        for name, p, avg in zip(names, probs, values):
            tiers.append(TierAllocation(
                tier_name=TierName(name),
                display_name=SolverConfig.TIER_DISPLAY_NAMES[name],
                color=SolverConfig.TIER_COLORS[name],
                probability=p,
                items=buckets[name],
                avg_value=avg,
                ev_contribution=p * avg,
            ))
        total_ev = sum(t.ev_contribution for t in tiers)
        actual_rtp = total_ev / box_price

        if abs(actual_rtp - target_rtp) >= SolverConfig.RTP_TOLERANCE:
            return fail(f"Solved RTP {actual_rtp:.4%} misses target {target_rtp:.2%} ({reach})")

        logger.info(
            f"Solved {len(parsed)} items into {k} tiers: RTP {actual_rtp:.4%} "
            f"(target {target_rtp:.2%}, {profile})"
        )
        return AutoConfigResult(
            success=True,
            tiers=tiers,
            total_ev=total_ev,
            actual_rtp=actual_rtp,
            house_edge=1.0 - actual_rtp,
            volatility=profile,
            **base,
        )

    def solve_request(self, request: AutoConfigRequest) -> AutoConfigResult:
        return self.solve(request.items, request.box_price, request.target_rtp, request.volatility)

    @staticmethod
    def _validate(items, box_price, target_rtp, volatility) -> tuple[Optional[str], list, str]:
        """(problem, parsed items, volatility profile). problem is None when valid."""
        if not items:
            return "At least one item is required", [], ""
        try:
            parsed = [it if isinstance(it, ConfigItem) else ConfigItem.model_validate(it)
                      for it in items]
        except ValidationError as e:
            return f"Invalid item: {e.errors()[0]['msg']}", [], ""

        if not _is_finite_number(box_price) or box_price <= 0:
            return f"box_price must be a positive number, got {box_price!r}", [], ""
        if not _is_finite_number(target_rtp) or not 0 < target_rtp < 1:
            return f"target_rtp must be between 0 and 1 (exclusive), got {target_rtp!r}", [], ""
        for it in parsed:
            value = it.effective_value
            if not math.isfinite(value) or value < 0:
                return f"Item {it.id} has invalid value {value!r}", [], ""

        if volatility is not None and not isinstance(volatility, str):
            return f"volatility must be a string, got {volatility!r}", [], ""
        profile = (volatility or SolverConfig.DEFAULT_VOLATILITY).lower()
        try:
            SolverConfig.template(profile)
        except ValueError as e:
            return str(e), [], ""
        return None, parsed, profile


def _is_finite_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def _as_float(x) -> float:
    return float(x) if _is_finite_number(x) else 0.0


# ═══════════════════════════════════════════════════════════════
# Proof
# ═══════════════════════════════════════════════════════════════

def rtp_proof(result: AutoConfigResult) -> dict:
    """Audit sheet for a solved table: per-tier P × value and the law checks."""
    if not result.success:
        return {
            "success": False,
            "error": result.error,
            "error_kind": result.error_kind.value if result.error_kind else None,
        }

    entries = []
    for t in result.tiers:
        entries.append({
            "tier": t.tier_name.value,
            "P": round(t.probability, 10),
            "avg_value": round(t.avg_value, 4),
            "P×value": round(t.ev_contribution, 6),
            "items": len(t.items),
        })

    probs = [t.probability for t in result.tiers]
    prob_sum = sum(probs)
    paytable_ev = sum(t.probability * t.avg_value for t in result.tiers)
    paytable_rtp = paytable_ev / result.box_price if result.box_price else 0.0

    # Rarer tiers must never be likelier than cheaper ones
    by_value = sorted(result.tiers, key=lambda t: t.avg_value)
    monotonic = all(
        a.probability >= b.probability or a.avg_value == b.avg_value
        for a, b in zip(by_value, by_value[1:])
    )

    return {
        "success": True,
        "volatility": result.volatility.value,
        "box_price": result.box_price,
        "target_rtp": result.target_rtp,
        "actual_rtp": round(result.actual_rtp, 8),
        "actual_rtp_pct": round(result.actual_rtp * 100, 4),
        "house_edge_pct": round(result.house_edge * 100, 4),
        "paytable_rtp": round(paytable_rtp, 8),
        "probability_sum": round(prob_sum, 12),
        "probability_sum_check": (
            "PASS" if abs(prob_sum - 1.0) < SolverConfig.PROBABILITY_TOLERANCE else "FAIL"
        ),
        "rtp_check": (
            "PASS" if abs(paytable_rtp - result.target_rtp) < SolverConfig.RTP_TOLERANCE else "FAIL"
        ),
        "monotonic_check": "PASS" if monotonic else "FAIL",
        "reachability_check": "PASS" if all(p > 0 for p in probs) else "FAIL",
        "n_tiers": len(entries),
        "entries": entries,
    }


# ═══════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import json

    demo = [
        {"id": "sticker", "name": "Sticker Pack", "price": 5},
        {"id": "cap", "name": "Logo Cap", "price": 25},
        {"id": "hoodie", "name": "Hoodie", "price": 70},
        {"id": "sneakers", "name": "Sneakers", "price": 180},
        {"id": "watch", "name": "Smart Watch", "price": 350},
        {"id": "console", "name": "Game Console", "price": 500, "value_cost": 420},
    ]
    res = RTPSolver().solve(demo, box_price=50, target_rtp=0.30, volatility="medium")
    print(json.dumps(rtp_proof(res), indent=2, ensure_ascii=False))
