#!/usr/bin/env python3
"""
BOXENGINE — HTTP API & CLI Test Suite

Run: python tests_api.py

Test categories:
  TestSeedEndpoints   — Issue, read, rotate, client seed, history
  TestRoundEndpoints  — Play, verify after reveal, audit, guest demo round
  TestVerifyEndpoint  — Stateless verification of raw round values
  TestBoxEndpoints    — Auto-config, apply, stored tiers
  TestBoxCLI          — hash / ticket / verify / solve / simulate commands
"""

import io
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from rich.console import Console

from config.database import sqlite_connection
from tools.provably_fair import HashFailure, derive_ticket, digest

SERVER_SEED = "my-server"
SERVER_HASH = "ae348bd0a230475740531fbc6bbd83b369bdac04e577e05e81351dbef6ebba85"


class _AppTestCase(unittest.TestCase):
    """Flask test client over a temp SQLite file."""

    def setUp(self):
        from web_app import create_app
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "api.db")
        self.app = create_app(db_factory=lambda: sqlite_connection(path))
        self.app.testing = True
        self.client = self.app.test_client()

    def tearDown(self):
        self.tmpdir.cleanup()

    def assertError(self, resp, status, kind):
        self.assertEqual(resp.status_code, status, resp.get_data(as_text=True))
        self.assertEqual(resp.get_json()["kind"], kind)


# ============================================================
# Seeds
# ============================================================

class TestSeedEndpoints(_AppTestCase):

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["status"], "ok")

    def test_issue_and_read(self):
        self.assertError(self.client.get("/api/seeds/u1"), 404, "NOT_FOUND")

        resp = self.client.post("/api/seeds/u1", json={"client_seed": "my-client"})
        self.assertEqual(resp.status_code, 201)
        data = resp.get_json()
        self.assertEqual(data["client_seed"], "my-client")
        self.assertEqual(data["state"], "active")
        self.assertEqual(len(data["server_seed_hash"]), 64)
        self.assertNotIn("server_seed", data)

        got = self.client.get("/api/seeds/u1").get_json()
        self.assertEqual(got["server_seed_hash"], data["server_seed_hash"])
        self.assertNotIn("server_seed", got)

    def test_issue_twice_conflicts(self):
        self.client.post("/api/seeds/u1")
        self.assertError(self.client.post("/api/seeds/u1"), 409, "ALREADY_ACTIVE")

    def test_issue_empty_client_seed(self):
        self.assertError(self.client.post("/api/seeds/u1", json={"client_seed": ""}), 400, "INVALID_INPUT")

    def test_set_client_seed(self):
        self.client.post("/api/seeds/u1")
        resp = self.client.put("/api/seeds/u1/client-seed", json={"client_seed": "lucky"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["active"]["client_seed"], "lucky")
        self.assertError(self.client.put("/api/seeds/u1/client-seed", json={}), 400, "INVALID_INPUT")
        self.assertError(self.client.put("/api/seeds/u2/client-seed", json={"client_seed": "x"}),
                         404, "NOT_FOUND")

    def test_rotate_reveals(self):
        issued = self.client.post("/api/seeds/u1").get_json()
        resp = self.client.post("/api/seeds/u1/rotate")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(digest(data["revealed_server_seed"]), issued["server_seed_hash"])
        self.assertNotEqual(data["new_server_seed_hash"], issued["server_seed_hash"])
        self.assertEqual(data["revealed"]["server_seed"], data["revealed_server_seed"])
        self.assertNotIn("server_seed", data["active"])

    def test_rotate_unknown_user(self):
        self.assertError(self.client.post("/api/seeds/ghost/rotate"), 404, "NOT_FOUND")

    def test_history(self):
        self.client.post("/api/seeds/u1")
        for _ in range(3):
            self.client.post("/api/seeds/u1/rotate")
        history = self.client.get("/api/seeds/u1/history").get_json()["history"]
        self.assertEqual(len(history), 3)
        self.assertTrue(all(h["state"] == "revealed" for h in history))
        self.assertEqual(len(self.client.get("/api/seeds/u1/history?limit=1").get_json()["history"]), 1)
        self.assertError(self.client.get("/api/seeds/u1/history?limit=0"), 400, "INVALID_INPUT")

    def test_hash_failure_is_not_swallowed(self):
        with patch("tools.provably_fair.hashlib.sha256", side_effect=ValueError("no sha256")):
            with self.assertRaises(HashFailure):
                self.client.post("/api/seeds/u1")


# ============================================================
# Rounds
# ============================================================

class TestRoundEndpoints(_AppTestCase):

    def test_play_auto_issues(self):
        resp = self.client.post("/api/seeds/newcomer/rounds")
        self.assertEqual(resp.status_code, 201)
        data = resp.get_json()
        self.assertEqual(data["nonce"], 0)
        self.assertIsNone(data["server_seed"])
        self.assertTrue(1 <= data["claimed_ticket"] <= 1_000_000)
        self.assertEqual(self.client.get("/api/seeds/newcomer").get_json()["nonce"], 1)

    def test_verify_after_reveal(self):
        self.client.post("/api/seeds/u1", json={"client_seed": "my-client"})
        played = [self.client.post("/api/seeds/u1/rounds").get_json() for _ in range(3)]
        self.assertEqual([p["nonce"] for p in played], [0, 1, 2])

        self.assertError(self.client.get(f"/api/rounds/{played[0]['round_id']}/verify"), 409, "NOT_REVEALED")

        revealed = self.client.post("/api/seeds/u1/rotate").get_json()["revealed_server_seed"]
        for p in played:
            resp = self.client.get(f"/api/rounds/{p['round_id']}/verify")
            self.assertEqual(resp.status_code, 200)
            body = resp.get_json()
            self.assertTrue(body["verification"]["valid"])
            self.assertEqual(body["round"]["server_seed"], revealed)
            self.assertEqual(p["claimed_ticket"], derive_ticket("my-client", revealed, p["nonce"]))

    def test_verify_unknown_round(self):
        self.assertError(self.client.get("/api/rounds/nope/verify"), 404, "NOT_FOUND")

    def test_audit(self):
        pair_id = self.client.post("/api/seeds/u1").get_json()["id"]
        self.client.post("/api/seeds/u1/rounds")
        self.client.post("/api/seeds/u1/rounds")
        self.assertError(self.client.get(f"/api/seed-pairs/{pair_id}/audit"), 409, "NOT_REVEALED")

        self.client.post("/api/seeds/u1/rotate")
        report = self.client.get(f"/api/seed-pairs/{pair_id}/audit").get_json()
        self.assertTrue(report["commitment_valid"])
        self.assertTrue(report["all_valid"])
        self.assertEqual(report["total_rounds"], 2)

    def test_demo_round_is_not_stored(self):
        resp = self.client.post("/api/demo/rounds", json={"client_seed": "guest"})
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertTrue(body["verification"]["valid"])
        self.assertEqual(body["round"]["client_seed"], "guest")
        self.assertEqual(body["round"]["server_seed_hash"], digest(body["round"]["server_seed"]))
        self.assertEqual(body["round"]["claimed_ticket"],
                         derive_ticket("guest", body["round"]["server_seed"], 0))

        db = self.app.config["DB_FACTORY"]()
        try:
            self.assertEqual(db.execute("SELECT COUNT(*) AS n FROM round_records").fetchone()["n"], 0)
            self.assertEqual(db.execute("SELECT COUNT(*) AS n FROM user_seeds").fetchone()["n"], 0)
        finally:
            db.close()

        self.assertError(self.client.post("/api/demo/rounds", json={"client_seed": ""}), 400, "INVALID_INPUT")


# ============================================================
# Stateless verification
# ============================================================

class TestVerifyEndpoint(_AppTestCase):

    def _body(self, **overrides):
        body = {"client_seed": "my-client", "server_seed": SERVER_SEED,
                "server_seed_hash": SERVER_HASH, "nonce": 0, "ticket": 406301}
        body.update(overrides)
        return body

    def test_valid(self):
        data = self.client.post("/api/verify", json=self._body()).get_json()
        self.assertTrue(data["valid"])
        self.assertEqual(data["computed_ticket"], 406301)

    def test_substituted_seed(self):
        data = self.client.post("/api/verify", json=self._body(server_seed="forged")).get_json()
        self.assertFalse(data["valid"])
        self.assertEqual(data["reason"], "SEED_SUBSTITUTED")

    def test_ticket_mismatch(self):
        data = self.client.post("/api/verify", json=self._body(ticket=5)).get_json()
        self.assertEqual(data["reason"], "TICKET_MISMATCH")
        self.assertEqual(data["computed_ticket"], 406301)

    def test_malformed_body(self):
        self.assertError(self.client.post("/api/verify", json={"client_seed": "x"}), 400, "INVALID_INPUT")
        self.assertError(self.client.post("/api/verify", json=self._body(nonce=-1)), 400, "INVALID_INPUT")

    def test_verification_script(self):
        resp = self.client.get("/api/verify.js")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.mimetype, "application/javascript")
        self.assertIn("function verifyResult", resp.get_data(as_text=True))

    def test_unknown_api_path(self):
        resp = self.client.get("/api/does-not-exist")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()["error"], "Not found")


# ============================================================
# Box config
# ============================================================

class TestBoxEndpoints(_AppTestCase):

    BODY = {
        "items": [{"id": "cap", "name": "Cap", "price": 10},
                  {"id": "watch", "name": "Watch", "price": 1000}],
        "box_price": 100,
        "target_rtp": 0.3,
        "volatility": "medium",
    }

    def test_auto_config(self):
        resp = self.client.post("/api/boxes/box-1/auto-config", json=self.BODY)
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertTrue(data["success"])
        self.assertAlmostEqual(data["actual_rtp"], 0.3, places=9)
        self.assertEqual(data["proof"]["probability_sum_check"], "PASS")
        self.assertNotIn("stored", data)
        self.assertEqual(self.client.get("/api/boxes/box-1/tiers").get_json()["tiers"], [])

    def test_apply_persists(self):
        resp = self.client.post("/api/boxes/box-1/auto-config?apply=1", json=self.BODY)
        self.assertEqual(len(resp.get_json()["stored"]), 2)
        tiers = self.client.get("/api/boxes/box-1/tiers").get_json()["tiers"]
        self.assertEqual([t["tier_name"] for t in tiers], ["common", "jackpot"])
        self.assertEqual(tiers[1]["item_ids"], ["watch"])

    def test_infeasible(self):
        resp = self.client.post("/api/boxes/box-1/auto-config", json={**self.BODY, "target_rtp": 0.99,
                                                                      "items": self.BODY["items"][:1]})
        self.assertError(resp, 422, "INFEASIBLE")
        self.assertFalse(resp.get_json()["success"])

    def test_invalid(self):
        self.assertError(self.client.post("/api/boxes/box-1/auto-config", json={**self.BODY, "box_price": 0}),
                         400, "INVALID_INPUT")
        self.assertError(self.client.post("/api/boxes/box-1/auto-config", json={"items": []}),
                         400, "INVALID_INPUT")


# ============================================================
# CLI
# ============================================================

class TestBoxCLI(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.out = io.StringIO()
        self.console = Console(file=self.out, width=200, color_system=None)

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_cli(self, *argv) -> int:
        from tools.box_cli import main
        return main(list(argv), console=self.console)

    def _items_file(self, data) -> str:
        path = os.path.join(self.tmpdir.name, "items.json")
        Path(path).write_text(json.dumps(data), encoding="utf-8")
        return path

    def test_hash(self):
        self.assertEqual(self.run_cli("hash", SERVER_SEED), 0)
        self.assertIn(SERVER_HASH, self.out.getvalue())

    def test_ticket(self):
        self.assertEqual(self.run_cli("ticket", "my-client", "my-server", "0", "--count", "2"), 0)
        self.assertIn("406,301", self.out.getvalue())
        self.assertIn("60,467", self.out.getvalue())

    def test_ticket_invalid_nonce(self):
        self.assertEqual(self.run_cli("ticket", "my-client", "my-server", "-1"), 2)
        self.assertIn("INVALID_INPUT", self.out.getvalue())

    def test_verify(self):
        base = ["verify", "--client-seed", "my-client", "--server-seed", SERVER_SEED,
                "--server-seed-hash", SERVER_HASH, "--nonce", "0"]
        self.assertEqual(self.run_cli(*base, "--ticket", "406301"), 0)
        self.assertEqual(self.run_cli(*base, "--ticket", "406302"), 1)
        self.assertIn("TICKET_MISMATCH", self.out.getvalue())

    def test_solve(self):
        path = self._items_file([{"id": "cap", "price": 10}, {"id": "watch", "price": 1000}])
        self.assertEqual(self.run_cli("solve", path, "--price", "100", "--rtp", "0.3"), 0)
        text = self.out.getvalue()
        self.assertIn("Legendary", text)
        self.assertIn("P_sum=PASS", text)

    def test_solve_json_request_file(self):
        path = self._items_file(TestBoxEndpoints.BODY)
        self.assertEqual(self.run_cli("solve", path, "--json"), 0)
        self.assertIn("probability_sum_check", self.out.getvalue())

    def test_solve_infeasible(self):
        path = self._items_file([{"id": "cap", "price": 10}])
        self.assertEqual(self.run_cli("solve", path, "--price", "100", "--rtp", "0.9"), 1)
        self.assertIn("INFEASIBLE", self.out.getvalue())

    def test_solve_bad_input(self):
        self.assertEqual(self.run_cli("solve", os.path.join(self.tmpdir.name, "missing.json")), 2)
        path = self._items_file([{"id": "cap", "price": 10}])
        self.assertEqual(self.run_cli("solve", path), 2)   # no box price anywhere

    def test_simulate(self):
        path = self._items_file(TestBoxEndpoints.BODY)
        self.assertEqual(self.run_cli("simulate", path, "--rounds", "20000"), 0)
        self.assertIn("Monte Carlo", self.out.getvalue())


# ============================================================
# Main
# ============================================================

if __name__ == "__main__":
    import logging
    logging.basicConfig(level=logging.WARNING)

    unittest.main(verbosity=2)
