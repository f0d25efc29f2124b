"""
BOXENGINE — Box Monte Carlo Simulator

Opens a solved box many times and checks the measured payout against the
solver's theoretical RTP. Each round picks a tier by its probability, then an
item uniformly within the tier, so the expected payout per round equals the
tier table's total EV.

Validation only: the production draw is resolved elsewhere from the
provably fair ticket.
"""

import bisect
import math
import random
import time
from dataclasses import dataclass, field

from config.box_schema import AutoConfigResult
from config.settings import SolverConfig


@dataclass
class BoxSimResult:
    """Simulation results for one tier table."""
    rounds: int
    box_price: float
    theoretical_rtp: float
    measured_rtp: float
    rtp_delta: float
    rtp_pass: bool
    confidence_95: tuple = (0.0, 0.0)
    total_wagered: float = 0.0
    total_returned: float = 0.0
    max_payout: float = 0.0
    hit_rates: dict = field(default_factory=dict)   # tier → {expected, measured, hits}
    seed: int = 42
    duration_seconds: float = 0.0

    def summary(self) -> str:
        status = "✅ PASS" if self.rtp_pass else "❌ FAIL"
        lines = [
            "═══ Monte Carlo: BOX ═══",
            f"  Rounds:      {self.rounds:,}",
            f"  Box price:   ${self.box_price:,.2f}",
            f"  Theoretical: {self.theoretical_rtp*100:.4f}%",
            f"  Measured:    {self.measured_rtp*100:.4f}%",
            f"  95% CI:      {self.confidence_95[0]*100:.4f}% – {self.confidence_95[1]*100:.4f}%",
            f"  RTP Check:   {status}",
            f"  Max payout:  ${self.max_payout:,.2f}",
        ]
        for tier, h in self.hit_rates.items():
            lines.append(
                f"  {tier:<8} expected {h['expected']*100:8.4f}%  measured {h['measured']*100:8.4f}%"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "rounds": self.rounds,
            "box_price": self.box_price,
            "theoretical_rtp": round(self.theoretical_rtp, 6),
            "measured_rtp": round(self.measured_rtp, 6),
            "rtp_delta": round(self.rtp_delta, 6),
            "rtp_pass": self.rtp_pass,
            "confidence_95": [round(x, 6) for x in self.confidence_95],
            "total_wagered": round(self.total_wagered, 2),
            "total_returned": round(self.total_returned, 2),
            "max_payout": round(self.max_payout, 2),
            "hit_rates": self.hit_rates,
            "seed": self.seed,
            "duration_s": round(self.duration_seconds, 2),
        }


class BoxSimulator:
    """Samples tier outcomes from a solved AutoConfigResult."""

    def __init__(self, tolerance: float = SolverConfig.RTP_TOLERANCE):
        self.tolerance = tolerance

    def simulate(self, result: AutoConfigResult, rounds: int = 100_000, seed: int = 42) -> BoxSimResult:
        if not result.success or not result.tiers:
            raise ValueError(f"Cannot simulate an unsuccessful config: {result.error}")
        if rounds <= 0:
            raise ValueError(f"rounds must be positive, got {rounds}")

        rng = random.Random(seed)
        start = time.time()

        tiers = result.tiers
        cumulative = []
        acc = 0.0
        for t in tiers:
            acc += t.probability
            cumulative.append(acc)
        values = [[it.effective_value for it in t.items] or [t.avg_value] for t in tiers]

        hits = [0] * len(tiers)
        total = 0.0
        total_sq = 0.0
        max_payout = 0.0
        last = len(tiers) - 1

        for _ in range(rounds):
            # min() guards the r ≥ acc case when the cumulative sum lands a hair under 1
            idx = min(bisect.bisect_right(cumulative, rng.random()), last)
            hits[idx] += 1
            payout = rng.choice(values[idx])
            total += payout
            total_sq += payout * payout
            if payout > max_payout:
                max_payout = payout

        wagered = rounds * result.box_price
        measured = total / wagered
        mean = total / rounds
        variance = max(total_sq / rounds - mean * mean, 0.0)
        std_err = math.sqrt(variance / rounds) / result.box_price
        ci = (measured - 1.96 * std_err, measured + 1.96 * std_err)
        delta = abs(measured - result.actual_rtp)

        return BoxSimResult(
            rounds=rounds,
            box_price=result.box_price,
            theoretical_rtp=result.actual_rtp,
            measured_rtp=measured,
            rtp_delta=delta,
            # Within tolerance, or within sampling noise for high-variance tables
            rtp_pass=delta <= max(self.tolerance, 3 * std_err),
            confidence_95=ci,
            total_wagered=wagered,
            total_returned=total,
            max_payout=max_payout,
            hit_rates={
                t.tier_name.value: {
                    "expected": round(t.probability, 6),
                    "measured": round(h / rounds, 6),
                    "hits": h,
                }
                for t, h in zip(tiers, hits)
            },
            seed=seed,
            duration_seconds=time.time() - start,
        )
