#!/usr/bin/env python3
"""
BOXENGINE — Provably Fair Core Test Suite

Run: python tests.py
     python tests.py -v                  # verbose
     python tests.py TestTicketDeriver   # run specific class

Test categories:
  TestHashCommit      — SHA-256 digests, seed generation, failure modes
  TestTicketDeriver   — Known vectors, range, determinism, input validation
  TestSeedPair        — Two-state machine, public view never leaks active seeds
  TestOutcomeVerifier — Valid rounds, substituted seeds, ticket mismatches, audits
  TestVerificationJS  — Generated browser verifier mirrors the Python algorithm

Ledger, solver and API suites live in tests_ledger.py, tests_solver.py and
tests_api.py.
"""

import hashlib
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.box_schema import ErrorKind
from tools.provably_fair import (
    FairnessError, HashFailure, OutcomeVerifier, RoundRecord, SeedPair, SeedState,
    combine_seeds, derive_ticket, digest, generate_client_seed, generate_server_seed,
    demo_round, generate_verification_js, round_message, ticket_from_hash,
)

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
SERVER_SEED = "my-server"
SERVER_HASH = "ae348bd0a230475740531fbc6bbd83b369bdac04e577e05e81351dbef6ebba85"


def _pair(**overrides) -> SeedPair:
    fields = dict(
        id="pair-1", user_id="u1", client_seed="my-client", server_seed=SERVER_SEED,
        server_seed_hash=SERVER_HASH, nonce=0, is_active=True, created_at="2026-01-01T00:00:00+00:00",
    )
    fields.update(overrides)
    return SeedPair(**fields)


# ============================================================
# HashCommit
# ============================================================

class TestHashCommit(unittest.TestCase):

    def test_known_vectors(self):
        self.assertEqual(digest("abc"), ABC_SHA256)
        self.assertEqual(digest(""), EMPTY_SHA256)
        self.assertEqual(digest(SERVER_SEED), SERVER_HASH)

    def test_bytes_and_str_agree(self):
        self.assertEqual(digest(b"abc"), digest("abc"))
        self.assertEqual(digest(bytearray(b"abc")), ABC_SHA256)

    def test_output_is_lowercase_hex_64(self):
        h = digest("Hello, World")
        self.assertEqual(len(h), 64)
        self.assertEqual(h, h.lower())
        int(h, 16)

    def test_unicode_is_utf8_encoded(self):
        self.assertEqual(digest("ünïcødé"), hashlib.sha256("ünïcødé".encode("utf-8")).hexdigest())

    def test_unencodable_string_is_invalid_input(self):
        with self.assertRaises(FairnessError) as ctx:
            digest("\ud800")  # lone surrogate
        self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_INPUT)

    def test_non_string_is_invalid_input(self):
        with self.assertRaises(FairnessError) as ctx:
            digest(12345)
        self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_INPUT)

    def test_platform_failure_is_fatal(self):
        with patch("tools.provably_fair.hashlib.sha256", side_effect=ValueError("unsupported")):
            with self.assertRaises(HashFailure) as ctx:
                digest("abc")
        self.assertEqual(ctx.exception.kind, ErrorKind.HASH_FAILURE)
        self.assertNotIsInstance(ctx.exception, FairnessError)

    def test_generated_seeds(self):
        s1, s2 = generate_server_seed(), generate_server_seed()
        self.assertEqual(len(s1), 64)   # 32 bytes hex
        self.assertNotEqual(s1, s2)
        self.assertEqual(len(generate_client_seed()), 32)


# ============================================================
# TicketDeriver
# ============================================================

class TestTicketDeriver(unittest.TestCase):

    def test_ticket_from_known_hash(self):
        # int("ba7816bf8f01c", 16) % 1_000_000 + 1
        self.assertEqual(ticket_from_hash(ABC_SHA256), 913501)

    def test_ticket_bounds(self):
        self.assertEqual(ticket_from_hash("0" * 64), 1)
        # 2**52 - 1 = 4503599627370495
        self.assertEqual(ticket_from_hash("f" * 64), 370496)

    def test_known_round_vectors(self):
        self.assertEqual(round_message("my-client", "my-server", 0), "my-client:my-server:0")
        self.assertEqual(
            combine_seeds("my-client", "my-server", 0),
            "66848999d141c76b15f59a8f77b52c5a9f68e14f6fbf35bb7d93044cdc5620bf",
        )
        self.assertEqual(derive_ticket("my-client", "my-server", 0), 406301)
        self.assertEqual(derive_ticket("my-client", "my-server", 1), 60467)
        self.assertEqual(derive_ticket("my-client", "my-server", 42), 458360)

    def test_unicode_seed_vector(self):
        self.assertEqual(derive_ticket("ünïcødé", "srv", 7), 216989)

    def test_deterministic(self):
        self.assertEqual(
            [derive_ticket("c", "s", n) for n in range(20)],
            [derive_ticket("c", "s", n) for n in range(20)],
        )

    def test_always_in_range(self):
        server = generate_server_seed()
        for nonce in range(500):
            self.assertTrue(1 <= derive_ticket("client", server, nonce) <= 1_000_000)

    def test_unescaped_separator_collides(self):
        """Colons inside seeds are not escaped, so these two rounds share a ticket."""
        self.assertEqual(derive_ticket("a:b", "c", 0), derive_ticket("a", "b:c", 0))
        self.assertEqual(derive_ticket("a:b", "c", 0), 931735)

    def test_invalid_inputs(self):
        cases = [
            ("", "s", 0),
            ("c", "", 0),
            ("c", "s", -1),
            ("c", "s", 1.5),
            ("c", "s", "0"),
            ("c", "s", True),
            (None, "s", 0),
        ]
        for client, server, nonce in cases:
            with self.subTest(client=client, server=server, nonce=nonce):
                with self.assertRaises(FairnessError) as ctx:
                    derive_ticket(client, server, nonce)
                self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_INPUT)

    def test_bad_hash_input(self):
        for bad in ("abc", "zzzzzzzzzzzzzzzz"):
            with self.subTest(bad=bad):
                with self.assertRaises(FairnessError):
                    ticket_from_hash(bad)


# ============================================================
# SeedPair state machine
# ============================================================

class TestSeedPair(unittest.TestCase):

    def test_active_view_hides_server_seed(self):
        view = _pair().public_view()
        self.assertEqual(view["state"], "active")
        self.assertNotIn("server_seed", view)
        self.assertEqual(view["server_seed_hash"], SERVER_HASH)

    def test_reveal_is_one_way(self):
        pair = _pair()
        revealed = pair.reveal(at="2026-01-02T00:00:00+00:00")
        self.assertIs(revealed.state, SeedState.REVEALED)
        self.assertEqual(revealed.revealed_at, "2026-01-02T00:00:00+00:00")
        self.assertEqual(revealed.public_view()["server_seed"], SERVER_SEED)
        # Original snapshot untouched
        self.assertIs(pair.state, SeedState.ACTIVE)
        with self.assertRaises(FairnessError):
            revealed.reveal()

    def test_from_row(self):
        row = {
            "id": "p", "user_id": "u", "client_seed": "c", "server_seed": "s",
            "server_seed_hash": digest("s"), "nonce": "3", "is_active": 0,
            "created_at": None, "revealed_at": "2026-01-02T00:00:00+00:00",
        }
        pair = SeedPair.from_row(row)
        self.assertEqual(pair.nonce, 3)
        self.assertIs(pair.state, SeedState.REVEALED)


# ============================================================
# OutcomeVerifier
# ============================================================

class TestOutcomeVerifier(unittest.TestCase):

    def setUp(self):
        self.verifier = OutcomeVerifier()

    def test_demo_round_verifies_without_storage(self):
        with patch("tools.provably_fair.generate_server_seed", return_value=SERVER_SEED):
            record = demo_round("my-client")
        self.assertEqual(record.server_seed_hash, SERVER_HASH)
        self.assertEqual(record.nonce, 0)
        self.assertEqual(record.claimed_ticket, 406301)
        self.assertIsNone(record.round_id)
        self.assertTrue(self.verifier.verify(record).valid)

        guest = demo_round()
        self.assertTrue(guest.client_seed.startswith("demo-"))
        self.assertTrue(guest.is_revealed)
        self.assertTrue(self.verifier.verify(guest).valid)
        with self.assertRaises(FairnessError):
            demo_round("")

    def _record(self, **overrides) -> RoundRecord:
        fields = dict(
            client_seed="my-client", server_seed_hash=SERVER_HASH, nonce=0,
            claimed_ticket=406301, server_seed=SERVER_SEED,
        )
        fields.update(overrides)
        return RoundRecord(**fields)

    def test_valid_round(self):
        result = self.verifier.verify(self._record())
        self.assertTrue(result.valid)
        self.assertIsNone(result.reason)
        self.assertEqual(result.computed_ticket, 406301)

    def test_hash_case_and_whitespace_tolerated(self):
        result = self.verifier.verify(self._record(server_seed_hash=f"  {SERVER_HASH.upper()} "))
        self.assertTrue(result.valid)

    def test_substituted_seed_detected_first(self):
        # Claimed ticket is also wrong; the commitment check must win
        with self.assertLogs("boxengine.fairness", level="WARNING") as logs:
            result = self.verifier.verify(self._record(server_seed="other-seed", claimed_ticket=1))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, ErrorKind.SEED_SUBSTITUTED)
        self.assertIsNone(result.computed_ticket)
        self.assertIn("SEED_SUBSTITUTED", logs.output[0])

    def test_ticket_mismatch(self):
        with self.assertLogs("boxengine.fairness", level="WARNING"):
            result = self.verifier.verify(self._record(claimed_ticket=406302))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, ErrorKind.TICKET_MISMATCH)
        self.assertEqual(result.computed_ticket, 406301)
        self.assertEqual(
            result.computed_hash,
            "66848999d141c76b15f59a8f77b52c5a9f68e14f6fbf35bb7d93044cdc5620bf",
        )

    def test_unrevealed_round(self):
        result = self.verifier.verify(self._record(server_seed=None))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, ErrorKind.INVALID_INPUT)

    def test_invalid_nonce_is_reported_not_raised(self):
        result = self.verifier.verify(self._record(nonce=-1))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, ErrorKind.INVALID_INPUT)

    def test_verify_is_repeatable(self):
        record = self._record()
        self.assertEqual(self.verifier.verify(record).to_dict(), self.verifier.verify(record).to_dict())

    def test_audit_report(self):
        pair = _pair(nonce=3).reveal()
        records = [
            RoundRecord(client_seed="my-client", server_seed_hash=SERVER_HASH, nonce=n,
                        claimed_ticket=derive_ticket("my-client", SERVER_SEED, n), round_id=f"r{n}")
            for n in range(3)
        ]
        report = self.verifier.audit_report(pair, records)
        self.assertTrue(report["commitment_valid"])
        self.assertTrue(report["all_valid"])
        self.assertEqual(report["total_rounds"], 3)
        self.assertEqual(report["server_seed"], SERVER_SEED)
        self.assertIn("step_3", report["verification_instructions"])

    def test_audit_report_flags_tampered_round(self):
        pair = _pair().reveal()
        records = [RoundRecord(client_seed="my-client", server_seed_hash=SERVER_HASH, nonce=0,
                               claimed_ticket=1, round_id="r0")]
        with self.assertLogs("boxengine.fairness", level="WARNING"):
            report = self.verifier.audit_report(pair, records)
        self.assertFalse(report["all_valid"])
        self.assertEqual(report["rounds"][0]["reason"], "TICKET_MISMATCH")


# ============================================================
# Verification JS
# ============================================================

class TestVerificationJS(unittest.TestCase):

    def test_js_mirrors_python_algorithm(self):
        js = generate_verification_js()
        self.assertIn("crypto.subtle.digest('SHA-256'", js)
        self.assertIn("slice(0, 13), 16) % 1000000) + 1", js)
        self.assertIn("clientSeed + ':' + serverSeed + ':' + nonce", js)
        self.assertIn("SEED_SUBSTITUTED", js)
        self.assertIn("TICKET_MISMATCH", js)


# ============================================================
# Main
# ============================================================

if __name__ == "__main__":
    # Configure logging to suppress noise during tests
    import logging
    logging.disable(logging.INFO)

    unittest.main(verbosity=2)
