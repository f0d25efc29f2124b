#!/usr/bin/env python3
"""
BOXENGINE — Seed Ledger Test Suite

Run: python tests_ledger.py

Every test runs against a fresh SQLite file in a temp directory, through the
same DatabaseConnection wrapper production uses.

Test categories:
  TestIssue           — First commitment, one active pair per user
  TestNonceAndClient  — Nonce reservation, client seed changes
  TestRotation        — Reveal + successor, atomicity, history
  TestRounds          — play_round persistence, reveal gating, verification
  TestConcurrency     — Threads on one user never share a nonce
"""

import os
import sqlite3
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.box_schema import ErrorKind
from config.database import init_db, sqlite_connection
from tools.provably_fair import OutcomeVerifier, SeedState, derive_ticket, digest
from tools.seed_ledger import LedgerError, SeedLedger


class _LedgerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "ledger.db")
        db = sqlite_connection(self.db_path)
        init_db(db)
        db.close()
        self.ledger = SeedLedger(db_factory=lambda: sqlite_connection(self.db_path))

    def tearDown(self):
        self.tmpdir.cleanup()

    def _count(self, sql, params=None) -> int:
        db = sqlite_connection(self.db_path)
        try:
            return db.execute(sql, params).fetchone()["n"]
        finally:
            db.close()

    def assertKind(self, kind, fn, *args):
        with self.assertRaises(LedgerError) as ctx:
            fn(*args)
        self.assertEqual(ctx.exception.kind, kind)
        return ctx.exception


# ============================================================
# Issue
# ============================================================

class TestIssue(_LedgerTestCase):

    def test_issue_commits_to_hash(self):
        pair = self.ledger.issue("u1", "my-client")
        self.assertEqual(pair.client_seed, "my-client")
        self.assertEqual(pair.nonce, 0)
        self.assertIs(pair.state, SeedState.ACTIVE)
        self.assertEqual(pair.server_seed_hash, digest(pair.server_seed))
        self.assertEqual(len(pair.server_seed), 64)
        self.assertNotIn("server_seed", pair.public_view())

    def test_issue_generates_client_seed(self):
        pair = self.ledger.issue("u1")
        self.assertTrue(pair.client_seed)

    def test_second_issue_rejected(self):
        self.ledger.issue("u1")
        self.assertKind(ErrorKind.ALREADY_ACTIVE, self.ledger.issue, "u1")
        self.assertEqual(self._count("SELECT COUNT(*) AS n FROM user_seeds"), 1)

    def test_users_are_independent(self):
        a = self.ledger.issue("alice")
        b = self.ledger.issue("bob")
        self.assertNotEqual(a.server_seed, b.server_seed)

    def test_invalid_input(self):
        self.assertKind(ErrorKind.INVALID_INPUT, self.ledger.issue, "")
        self.assertKind(ErrorKind.INVALID_INPUT, self.ledger.issue, "u1", "")
        self.assertKind(ErrorKind.INVALID_INPUT, self.ledger.issue, "u1", "   ")

    def test_issue_logs_hash_not_seed(self):
        with self.assertLogs("boxengine.ledger", level="INFO") as logs:
            pair = self.ledger.issue("u1")
        text = "\n".join(logs.output)
        self.assertIn(pair.server_seed_hash, text)
        self.assertNotIn(pair.server_seed, text)

    def test_unique_index_rejects_second_active_row(self):
        self.ledger.issue("u1")
        db = sqlite_connection(self.db_path)
        try:
            with self.assertRaises(sqlite3.IntegrityError):
                db.execute(
                    "INSERT INTO user_seeds (id, user_id, client_seed, server_seed, "
                    "server_seed_hash, nonce, is_active) VALUES ('x', 'u1', 'c', 's', 'h', 0, 1)"
                )
        finally:
            db.close()

    def test_ensure_active(self):
        created = self.ledger.ensure_active("u1")
        again = self.ledger.ensure_active("u1")
        self.assertEqual(created.id, again.id)

    def test_get_active_missing(self):
        self.assertKind(ErrorKind.NOT_FOUND, self.ledger.get_active, "nobody")


# ============================================================
# Nonce & client seed
# ============================================================

class TestNonceAndClient(_LedgerTestCase):

    def test_next_nonce_sequence(self):
        self.ledger.issue("u1")
        self.assertEqual([self.ledger.next_nonce("u1") for _ in range(3)], [0, 1, 2])
        self.assertEqual(self.ledger.get_active("u1").nonce, 3)

    def test_next_nonce_without_pair(self):
        self.assertKind(ErrorKind.NOT_FOUND, self.ledger.next_nonce, "u1")

    def test_set_client_seed(self):
        pair = self.ledger.issue("u1", "old")
        self.ledger.next_nonce("u1")
        self.ledger.set_client_seed("u1", "new")
        active = self.ledger.get_active("u1")
        self.assertEqual(active.client_seed, "new")
        self.assertEqual(active.nonce, 1)
        self.assertEqual(active.server_seed_hash, pair.server_seed_hash)
        self.assertEqual(active.id, pair.id)

    def test_set_client_seed_errors(self):
        self.assertKind(ErrorKind.NOT_FOUND, self.ledger.set_client_seed, "u1", "x")
        self.ledger.issue("u1")
        self.assertKind(ErrorKind.INVALID_INPUT, self.ledger.set_client_seed, "u1", "")
        self.assertKind(ErrorKind.INVALID_INPUT, self.ledger.set_client_seed, "u1", None)


# ============================================================
# Rotation
# ============================================================

class TestRotation(_LedgerTestCase):

    def test_rotate_reveals_and_replaces(self):
        old = self.ledger.issue("u1", "my-client")
        self.ledger.next_nonce("u1")
        rotation = self.ledger.rotate("u1")

        self.assertEqual(rotation.revealed_server_seed, old.server_seed)
        self.assertEqual(digest(rotation.revealed_server_seed), old.server_seed_hash)
        self.assertIs(rotation.revealed.state, SeedState.REVEALED)
        self.assertEqual(rotation.revealed.nonce, 1)
        self.assertIsNotNone(rotation.revealed.revealed_at)

        new = rotation.active
        self.assertEqual(rotation.new_server_seed_hash, new.server_seed_hash)
        self.assertNotEqual(new.server_seed_hash, old.server_seed_hash)
        self.assertEqual(new.client_seed, "my-client")
        self.assertEqual(new.nonce, 0)
        self.assertEqual(self.ledger.get_active("u1").id, new.id)
        self.assertEqual(
            self._count("SELECT COUNT(*) AS n FROM user_seeds WHERE user_id = ? AND is_active = 1", ["u1"]),
            1,
        )

    def test_rotate_without_pair(self):
        self.assertKind(ErrorKind.NOT_FOUND, self.ledger.rotate, "u1")

    def test_rotate_is_atomic(self):
        old = self.ledger.issue("u1")
        with patch("tools.seed_ledger.generate_server_seed", side_effect=RuntimeError("entropy")):
            with self.assertRaises(RuntimeError):
                self.ledger.rotate("u1")
        # Old pair untouched: still active, still secret, nothing in history
        active = self.ledger.get_active("u1")
        self.assertEqual(active.id, old.id)
        self.assertIs(active.state, SeedState.ACTIVE)
        self.assertEqual(self.ledger.history("u1"), [])

    def test_history_newest_first(self):
        self.ledger.issue("u1")
        revealed = [self.ledger.rotate("u1").revealed.id for _ in range(3)]
        history = self.ledger.history("u1")
        self.assertEqual([p.id for p in history], list(reversed(revealed)))
        self.assertTrue(all(p.state is SeedState.REVEALED for p in history))
        self.assertTrue(all("server_seed" in p.public_view() for p in history))
        self.assertEqual(len(self.ledger.history("u1", limit=2)), 2)

    def test_history_rejects_non_positive_limit(self):
        self.ledger.issue("u1")
        for _ in range(3):
            self.ledger.rotate("u1")
        for bad in (0, -5, "2", 1.5):
            with self.assertRaises(LedgerError) as ctx:
                self.ledger.history("u1", limit=bad)
            self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_INPUT)
        with patch("tools.seed_ledger.ServerConfig.MAX_HISTORY", 2):
            self.assertEqual(len(self.ledger.history("u1", limit=50)), 2)


# ============================================================
# Rounds
# ============================================================

class TestRounds(_LedgerTestCase):

    def test_play_round_records_commitment(self):
        pair = self.ledger.issue("u1", "my-client")
        records = [self.ledger.play_round("u1") for _ in range(3)]
        self.assertEqual([r.nonce for r in records], [0, 1, 2])
        for r in records:
            self.assertIsNone(r.server_seed)
            self.assertEqual(r.server_seed_hash, pair.server_seed_hash)
            self.assertEqual(r.claimed_ticket, derive_ticket("my-client", pair.server_seed, r.nonce))
        self.assertEqual(self.ledger.get_active("u1").nonce, 3)
        self.assertEqual([r.nonce for r in self.ledger.rounds_for_pair(pair.id)], [0, 1, 2])

    def test_revealed_round_gating(self):
        self.ledger.issue("u1")
        record = self.ledger.play_round("u1")
        self.assertKind(ErrorKind.NOT_REVEALED, self.ledger.revealed_round, record.round_id)
        self.assertKind(ErrorKind.NOT_FOUND, self.ledger.revealed_round, "missing")

    def test_revealed_rounds_verify(self):
        self.ledger.issue("u1")
        ids = [self.ledger.play_round("u1").round_id for _ in range(5)]
        rotation = self.ledger.rotate("u1")
        verifier = OutcomeVerifier()
        for round_id in ids:
            record = self.ledger.revealed_round(round_id)
            self.assertEqual(record.server_seed, rotation.revealed_server_seed)
            self.assertTrue(verifier.verify(record).valid)

    def test_client_seed_change_applies_to_next_round(self):
        pair = self.ledger.issue("u1", "first")
        self.ledger.play_round("u1")
        self.ledger.set_client_seed("u1", "second")
        r = self.ledger.play_round("u1")
        self.assertEqual(r.client_seed, "second")
        self.assertEqual(r.nonce, 1)
        self.assertEqual(r.claimed_ticket, derive_ticket("second", pair.server_seed, 1))


# ============================================================
# Concurrency
# ============================================================

class TestConcurrency(_LedgerTestCase):

    def _run_threads(self, target, n):
        errors = []

        def wrapped(i):
            try:
                target(i)
            except Exception as e:  # surfaced via the errors list
                errors.append(e)

        threads = [threading.Thread(target=wrapped, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return errors

    def test_nonces_never_repeat(self):
        self.ledger.issue("u1")
        seen, lock = [], threading.Lock()

        def worker(_):
            for _ in range(25):
                n = self.ledger.next_nonce("u1")
                with lock:
                    seen.append(n)

        self.assertEqual(self._run_threads(worker, 8), [])
        self.assertEqual(sorted(seen), list(range(200)))
        self.assertEqual(self.ledger.get_active("u1").nonce, 200)

    def test_concurrent_rounds_persist_once_each(self):
        pair = self.ledger.issue("u1")
        self.assertEqual(self._run_threads(lambda _: [self.ledger.play_round("u1") for _ in range(10)], 4), [])
        nonces = [r.nonce for r in self.ledger.rounds_for_pair(pair.id)]
        self.assertEqual(nonces, list(range(40)))

    def test_concurrent_issue_single_winner(self):
        results = []

        def worker(_):
            try:
                self.ledger.issue("u1")
                results.append("ok")
            except LedgerError as e:
                results.append(e.kind)

        self.assertEqual(self._run_threads(worker, 6), [])
        self.assertEqual(results.count("ok"), 1)
        self.assertEqual(results.count(ErrorKind.ALREADY_ACTIVE), 5)

    def test_rotation_interleaved_with_play(self):
        self.ledger.issue("u1")

        def worker(i):
            for _ in range(5):
                if i == 0:
                    self.ledger.rotate("u1")
                else:
                    self.ledger.play_round("u1")

        self.assertEqual(self._run_threads(worker, 4), [])
        self.assertEqual(
            self._count("SELECT COUNT(*) AS n FROM user_seeds WHERE user_id = ? AND is_active = 1", ["u1"]),
            1,
        )
        # Every round is still verifiable against the pair it was played on
        self.ledger.rotate("u1")
        db = sqlite_connection(self.db_path)
        try:
            ids = [r["id"] for r in db.execute("SELECT id FROM round_records").fetchall()]
        finally:
            db.close()
        self.assertEqual(len(ids), 15)
        verifier = OutcomeVerifier()
        for round_id in ids:
            self.assertTrue(verifier.verify(self.ledger.revealed_round(round_id)).valid)

    def test_users_proceed_independently(self):
        users = [f"user-{i}" for i in range(4)]
        for u in users:
            self.ledger.issue(u)
        self.assertEqual(
            self._run_threads(lambda i: [self.ledger.next_nonce(users[i]) for _ in range(10)], 4), []
        )
        for u in users:
            self.assertEqual(self.ledger.get_active(u).nonce, 10)

    def test_lock_registry_drains(self):
        for i in range(200):
            with self.assertRaises(LedgerError):
                self.ledger.rotate(f"nobody-{i}")
        self.assertEqual(len(self.ledger._locks._locks), 0)

        self.ledger.issue("u1")
        errors = self._run_threads(lambda i: self.ledger.play_round("u1"), 8)
        self.assertEqual(errors, [])
        self.assertEqual(self.ledger.get_active("u1").nonce, 8)
        self.assertEqual(len(self.ledger._locks._locks), 0)


# ============================================================
# Main
# ============================================================

if __name__ == "__main__":
    import logging
    logging.basicConfig(level=logging.WARNING)

    unittest.main(verbosity=2)
