#!/usr/bin/env python3
"""
BOXENGINE — RTP Solver, Simulation & Tier Store Test Suite

Run: python tests_solver.py

Test categories:
  TestBucketing        — Percentile tiers, small catalogues, value_cost, ties
  TestSolverLaws       — Sum, RTP, monotonicity, positivity across a grid
  TestSolverScenarios  — Worked examples with exact answers
  TestSolverRejections — INVALID_INPUT and INFEASIBLE results
  TestProofAndFormat   — rtp_proof checks, display helpers
  TestBoxSimulator     — Monte Carlo agrees with the solved table
  TestTierStore        — Save / load / replace tier tables
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.box_schema import AutoConfigRequest, ConfigItem, ErrorKind
from config.database import init_db, sqlite_connection
from sim_engine.boxes import BoxSimulator
from tools.provably_fair import FairnessError
from tools.rtp_solver import (
    RTPSolver, bucket_items, format_currency, format_probability, rtp_proof,
)
from tools.tier_store import load_tier_table, save_tier_table

CATALOGUE_VALUES = [5, 8, 10, 12, 15, 20, 25, 30, 40, 50,
                    60, 80, 100, 150, 200, 300, 400, 600, 800, 1500]


def _items(values, prefix="item"):
    return [ConfigItem(id=f"{prefix}-{i:02d}", name=f"Item {i}", price=v) for i, v in enumerate(values)]


def _sizes(buckets):
    return {name: len(members) for name, members in buckets.items()}


# ============================================================
# Bucketing
# ============================================================

class TestBucketing(unittest.TestCase):

    def test_twenty_items(self):
        buckets = bucket_items(_items(CATALOGUE_VALUES))
        self.assertEqual(_sizes(buckets), {"common": 10, "mid": 6, "rare": 3, "jackpot": 1})
        self.assertEqual(buckets["jackpot"][0].price, 1500)
        self.assertEqual([it.price for it in buckets["rare"]], [800, 600, 400])

    def test_small_catalogues(self):
        self.assertEqual(_sizes(bucket_items(_items([10]))), {"common": 1})
        self.assertEqual(_sizes(bucket_items(_items([10, 20]))), {"common": 1, "jackpot": 1})
        self.assertEqual(_sizes(bucket_items(_items([10, 20, 30]))), {"common": 1, "mid": 1, "jackpot": 1})
        self.assertEqual(_sizes(bucket_items(_items([10, 20, 30, 40]))), {"common": 2, "mid": 1, "jackpot": 1})
        self.assertEqual(
            _sizes(bucket_items(_items([10, 20, 30, 40, 50]))),
            {"common": 1, "mid": 2, "rare": 1, "jackpot": 1},
        )

    def test_every_item_lands_in_one_tier(self):
        for n in range(1, 60):
            with self.subTest(n=n):
                items = _items(range(1, n + 1))
                buckets = bucket_items(items)
                ids = [it.id for members in buckets.values() for it in members]
                self.assertEqual(sorted(ids), sorted(it.id for it in items))
                self.assertIn("common", buckets)

    def test_value_cost_overrides_price(self):
        items = [
            ConfigItem(id="flashy", price=500, value_cost=20),
            ConfigItem(id="solid", price=100, value_cost=900),
        ]
        buckets = bucket_items(items)
        self.assertEqual(buckets["jackpot"][0].id, "solid")
        self.assertEqual(buckets["common"][0].id, "flashy")

    def test_ties_broken_by_id(self):
        items = [ConfigItem(id=i, price=10) for i in ("c", "a", "b")]
        buckets = bucket_items(items)
        self.assertEqual(buckets["jackpot"][0].id, "a")
        self.assertEqual(buckets["mid"][0].id, "b")


# ============================================================
# Solver laws
# ============================================================

class TestSolverLaws(unittest.TestCase):

    def setUp(self):
        self.solver = RTPSolver()
        self.items = _items(CATALOGUE_VALUES)

    def test_laws_hold_across_grid(self):
        for volatility in ("low", "medium", "high"):
            for target in (0.25, 0.30, 0.50, 0.75, 0.90):
                with self.subTest(volatility=volatility, target=target):
                    res = self.solver.solve(self.items, 100, target, volatility)
                    self.assertTrue(res.success, res.error)
                    probs = [t.probability for t in res.tiers]

                    self.assertLess(abs(sum(probs) - 1.0), 1e-9)
                    self.assertLess(abs(res.actual_rtp - target), 0.005)
                    self.assertAlmostEqual(res.house_edge, 1 - res.actual_rtp, places=12)
                    self.assertTrue(all(p > 0 for p in probs))
                    # Tiers come out cheapest first; rarer must never be likelier
                    avgs = [t.avg_value for t in res.tiers]
                    self.assertEqual(avgs, sorted(avgs))
                    for a, b in zip(probs, probs[1:]):
                        self.assertGreaterEqual(a, b)

    def test_deterministic(self):
        a = self.solver.solve(self.items, 100, 0.3, "medium")
        b = self.solver.solve(list(reversed(self.items)), 100, 0.3, "medium")
        self.assertEqual(a.model_dump(), b.model_dump())

    def test_volatility_changes_shape(self):
        low = self.solver.solve(self.items, 100, 0.3, "low")
        high = self.solver.solve(self.items, 100, 0.3, "high")
        self.assertNotEqual([t.probability for t in low.tiers], [t.probability for t in high.tiers])
        self.assertEqual(low.volatility.value, "low")
        self.assertEqual(high.volatility.value, "high")

    def test_tier_metadata(self):
        res = self.solver.solve(self.items, 100, 0.3)
        names = [t.tier_name.value for t in res.tiers]
        self.assertEqual(names, ["common", "mid", "rare", "jackpot"])
        self.assertEqual(res.tiers[-1].display_name, "Legendary")
        self.assertEqual(res.tiers[-1].color, "#F59E0B")
        for t in res.tiers:
            self.assertAlmostEqual(t.ev_contribution, t.probability * t.avg_value, places=12)
        self.assertAlmostEqual(res.total_ev, sum(t.ev_contribution for t in res.tiers), places=12)

    def test_request_model(self):
        req = AutoConfigRequest(
            items=[{"id": "a", "price": 10}, {"id": "b", "price": 1000}],
            box_price=100, target_rtp=0.3, volatility="HIGH",
        )
        res = self.solver.solve_request(req)
        self.assertTrue(res.success)
        self.assertEqual(res.volatility.value, "high")


# ============================================================
# Worked scenarios
# ============================================================

class TestSolverScenarios(unittest.TestCase):

    def setUp(self):
        self.solver = RTPSolver()

    def test_two_items_above_template(self):
        """p·1000 + (1 - p)·10 = 30  →  p = 20 / 990."""
        res = self.solver.solve(_items([10, 1000]), 100, 0.30)
        self.assertTrue(res.success)
        common, jackpot = res.tiers
        self.assertEqual(jackpot.tier_name.value, "jackpot")
        self.assertAlmostEqual(jackpot.probability, 20 / 990, places=9)
        self.assertAlmostEqual(common.probability, 970 / 990, places=9)
        self.assertAlmostEqual(res.actual_rtp, 0.30, places=9)
        self.assertAlmostEqual(res.house_edge, 0.70, places=9)

    def test_two_items_below_template(self):
        """Target under the template's EV mixes toward the floor: p = 2 / 990."""
        res = self.solver.solve(_items([10, 1000]), 100, 0.12)
        self.assertTrue(res.success)
        self.assertAlmostEqual(res.tiers[-1].probability, 2 / 990, places=9)

    def test_single_item_matching_target(self):
        res = self.solver.solve(_items([30]), 100, 0.30)
        self.assertTrue(res.success)
        self.assertEqual(len(res.tiers), 1)
        self.assertEqual(res.tiers[0].probability, 1.0)

    def test_equal_values_matching_target(self):
        res = self.solver.solve(_items([30, 30, 30]), 100, 0.30)
        self.assertTrue(res.success)
        self.assertAlmostEqual(res.actual_rtp, 0.30, places=9)

    def test_value_cost_drives_ev(self):
        items = [ConfigItem(id="a", price=10), ConfigItem(id="b", price=5000, value_cost=1000)]
        res = self.solver.solve(items, 100, 0.30)
        self.assertAlmostEqual(res.tiers[-1].avg_value, 1000)
        self.assertAlmostEqual(res.tiers[-1].probability, 20 / 990, places=9)


# ============================================================
# Rejections
# ============================================================

class TestSolverRejections(unittest.TestCase):

    def setUp(self):
        self.solver = RTPSolver()
        self.items = _items([10, 1000])

    def assertRejected(self, res, kind):
        self.assertFalse(res.success)
        self.assertEqual(res.error_kind, kind)
        self.assertTrue(res.error)
        self.assertEqual(res.tiers, [])

    def test_invalid_inputs(self):
        cases = {
            "no items": ([], 100, 0.3, "medium"),
            "zero price": (self.items, 0, 0.3, "medium"),
            "negative price": (self.items, -5, 0.3, "medium"),
            "zero rtp": (self.items, 100, 0.0, "medium"),
            "rtp of one": (self.items, 100, 1.0, "medium"),
            "rtp above one": (self.items, 100, 1.5, "medium"),
            "negative value": (_items([10, -1]), 100, 0.3, "medium"),
            "unknown volatility": (self.items, 100, 0.3, "extreme"),
            "non-string volatility": (self.items, 100, 0.3, 5),
            "malformed item": ([{"id": "x"}], 100, 0.3, "medium"),
            "nan price": (self.items, float("nan"), 0.3, "medium"),
        }
        for label, args in cases.items():
            with self.subTest(label):
                self.assertRejected(self.solver.solve(*args), ErrorKind.INVALID_INPUT)

    def test_target_above_reach(self):
        with self.assertLogs("boxengine.solver", level="INFO"):
            res = self.solver.solve(_items([10, 20]), 100, 0.5)
        self.assertRejected(res, ErrorKind.INFEASIBLE)
        self.assertIn("reachable RTP range", res.error)
        self.assertIn("15.00%", res.error)   # uniform EV 15 on a 100 box

    def test_target_below_floor(self):
        res = self.solver.solve(_items([50, 1000]), 100, 0.3)
        self.assertRejected(res, ErrorKind.INFEASIBLE)
        self.assertIn("below the minimum", res.error)

    def test_single_item_missing_target(self):
        self.assertRejected(self.solver.solve(_items([50]), 100, 0.3), ErrorKind.INFEASIBLE)

    def test_equal_values_missing_target(self):
        self.assertRejected(self.solver.solve(_items([30, 30, 30]), 100, 0.5), ErrorKind.INFEASIBLE)

    def test_zero_value_catalogue(self):
        self.assertRejected(self.solver.solve(_items([0, 0]), 100, 0.3), ErrorKind.INFEASIBLE)


# ============================================================
# Proof & formatting
# ============================================================

class TestProofAndFormat(unittest.TestCase):

    def test_proof_passes_for_solved_table(self):
        res = RTPSolver().solve(_items(CATALOGUE_VALUES), 100, 0.3, "high")
        proof = rtp_proof(res)
        for check in ("probability_sum_check", "rtp_check", "monotonic_check", "reachability_check"):
            self.assertEqual(proof[check], "PASS", check)
        self.assertEqual(proof["n_tiers"], 4)
        self.assertAlmostEqual(proof["house_edge_pct"], 70.0, places=2)

    def test_proof_for_failure(self):
        proof = rtp_proof(RTPSolver().solve([], 100, 0.3))
        self.assertFalse(proof["success"])
        self.assertEqual(proof["error_kind"], "INVALID_INPUT")

    def test_format_helpers(self):
        self.assertEqual(format_probability(0.0202), "2.02%")
        self.assertEqual(format_probability(0.00005), "0.0050%")
        self.assertEqual(format_probability(1.0), "100.00%")
        self.assertEqual(format_currency(1234.5), "$1,234.50")


# ============================================================
# Monte Carlo
# ============================================================

class TestBoxSimulator(unittest.TestCase):

    def setUp(self):
        self.result = RTPSolver().solve(_items([10, 1000]), 100, 0.30)

    def test_measured_rtp_matches(self):
        sim = BoxSimulator().simulate(self.result, rounds=200_000, seed=42)
        self.assertTrue(sim.rtp_pass, sim.summary())
        self.assertLess(sim.confidence_95[0], sim.measured_rtp)
        self.assertGreater(sim.confidence_95[1], sim.measured_rtp)
        jackpot = sim.hit_rates["jackpot"]
        self.assertAlmostEqual(jackpot["measured"], 20 / 990, delta=0.003)
        self.assertEqual(sum(h["hits"] for h in sim.hit_rates.values()), 200_000)

    def test_deterministic_for_seed(self):
        a = BoxSimulator().simulate(self.result, rounds=5_000, seed=7)
        b = BoxSimulator().simulate(self.result, rounds=5_000, seed=7)
        self.assertEqual(a.measured_rtp, b.measured_rtp)
        self.assertEqual(a.hit_rates, b.hit_rates)

    def test_rejects_unsolved(self):
        with self.assertRaises(ValueError):
            BoxSimulator().simulate(RTPSolver().solve([], 100, 0.3))
        with self.assertRaises(ValueError):
            BoxSimulator().simulate(self.result, rounds=0)

    def test_to_dict(self):
        d = BoxSimulator().simulate(self.result, rounds=1_000).to_dict()
        self.assertIn("measured_rtp", d)
        self.assertEqual(len(d["confidence_95"]), 2)


# ============================================================
# Tier store
# ============================================================

class TestTierStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db = sqlite_connection(os.path.join(self.tmpdir.name, "tiers.db"))
        init_db(self.db)

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    def test_save_and_load(self):
        res = RTPSolver().solve(_items(CATALOGUE_VALUES), 100, 0.3)
        save_tier_table("box-1", res, db=self.db)
        rows = load_tier_table("box-1", db=self.db)
        self.assertEqual([r["tier_name"] for r in rows], ["common", "mid", "rare", "jackpot"])
        self.assertAlmostEqual(sum(r["probability"] for r in rows), 1.0, places=9)
        self.assertEqual(rows[-1]["item_ids"], ["item-19"])
        self.assertEqual(rows[0]["color_hex"], "#6B7280")
        self.assertAlmostEqual(rows[0]["target_rtp"], 0.3)

    def test_save_replaces_table(self):
        save_tier_table("box-1", RTPSolver().solve(_items(CATALOGUE_VALUES), 100, 0.3), db=self.db)
        save_tier_table("box-1", RTPSolver().solve(_items([10, 1000]), 100, 0.3), db=self.db)
        rows = load_tier_table("box-1", db=self.db)
        self.assertEqual([r["tier_name"] for r in rows], ["common", "jackpot"])

    def test_boxes_are_separate(self):
        save_tier_table("box-1", RTPSolver().solve(_items([10, 1000]), 100, 0.3), db=self.db)
        self.assertEqual(load_tier_table("box-2", db=self.db), [])

    def test_refuses_failed_result(self):
        with self.assertRaises(FairnessError) as ctx:
            save_tier_table("box-1", RTPSolver().solve([], 100, 0.3), db=self.db)
        self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_INPUT)


# ============================================================
# Main
# ============================================================

if __name__ == "__main__":
    import logging
    logging.basicConfig(level=logging.WARNING)

    unittest.main(verbosity=2)
