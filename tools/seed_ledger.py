"""
BOXENGINE — Seed Ledger

Owns the life cycle of each user's seed pairs:

    issue ──► ACTIVE ──(next_nonce / play_round)──► ACTIVE ──rotate──► REVEALED
                                                       │
                                                       └── successor issued in the
                                                           same transaction

Invariants:
  • At most one ACTIVE pair per user (partial unique index + per-user lock).
  • A nonce is handed out exactly once (row lock + unique (seed_pair_id, nonce)).
  • Retiring a pair and issuing its successor commit together or not at all.
  • Revealed pairs are never written again.

Usage:
    from tools.seed_ledger import SeedLedger
    ledger = SeedLedger()
    pair = ledger.issue("user-42")
    record = ledger.play_round("user-42")          # ticket committed, seed still secret
    rotation = ledger.rotate("user-42")            # old seed revealed, new hash published
    ledger.revealed_round(record.round_id)         # record + server seed, ready to verify
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from config.box_schema import ErrorKind
from config.database import INTEGRITY_ERRORS, get_standalone_db
from config.settings import ServerConfig
from tools.provably_fair import (
    FairnessError, RoundRecord, SeedPair,
    combine_seeds, digest, generate_client_seed, generate_server_seed,
    ticket_from_hash, utc_now,
)

logger = logging.getLogger("boxengine.ledger")


class LedgerError(FairnessError):
    """Seed ledger failure: ALREADY_ACTIVE, NOT_FOUND, NOT_REVEALED, INVALID_INPUT."""


@dataclass(frozen=True)
class RotationResult:
    revealed: SeedPair      # The retired pair, server seed now public
    active: SeedPair        # Its successor, same client seed, nonce 0

    @property
    def revealed_server_seed(self) -> str:
        return self.revealed.server_seed

    @property
    def new_server_seed_hash(self) -> str:
        return self.active.server_seed_hash

    def to_dict(self) -> dict:
        return {
            "revealed_server_seed": self.revealed_server_seed,
            "new_server_seed_hash": self.new_server_seed_hash,
            "revealed": self.revealed.public_view(),
            "active": self.active.public_view(),
        }


class _UserLocks:
    """One lock per user id; different users never wait on each other.

    Entries are reference-counted and dropped when the last holder leaves,
    so ids that never come back do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}    # user_id -> [lock, holders]

    @contextmanager
    def hold(self, user_id: str):
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[user_id]


def _require(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise LedgerError(ErrorKind.INVALID_INPUT, f"{name} must be a non-empty string")
    return value


_ACTIVE_SQL = "SELECT * FROM user_seeds WHERE user_id = ? AND is_active = 1"


class SeedLedger:
    """Transactional store of seed pairs and the rounds played against them."""

    def __init__(self, db_factory: Optional[Callable] = None):
        self._db_factory = db_factory or get_standalone_db
        self._locks = _UserLocks()

    # ── Plumbing ──────────────────────────────────────────────

    @contextmanager
    def _locked(self, user_id: str):
        """Per-user lock + one database transaction. Rolls back on any error."""
        with self._locks.hold(user_id):
            db = self._db_factory()
            try:
                with db.transaction():
                    yield db
            finally:
                db.close()

    @contextmanager
    def _reader(self):
        db = self._db_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def _active_for_update(db, user_id: str) -> SeedPair:
        row = db.execute(_ACTIVE_SQL + " FOR UPDATE", [user_id]).fetchone()
        if row is None:
            raise LedgerError(ErrorKind.NOT_FOUND, f"No active seed pair for user {user_id}")
        return SeedPair.from_row(row)

    @staticmethod
    def _insert_pair(db, user_id: str, client_seed: str) -> SeedPair:
        server_seed = generate_server_seed()
        pair = SeedPair(
            id=uuid.uuid4().hex,
            user_id=user_id,
            client_seed=client_seed,
            server_seed=server_seed,
            server_seed_hash=digest(server_seed),
            nonce=0,
            is_active=True,
            created_at=utc_now(),
        )
        db.execute(
            "INSERT INTO user_seeds (id, user_id, client_seed, server_seed, server_seed_hash, "
            "nonce, is_active, created_at) VALUES (?,?,?,?,?,?,?,?)",
            [pair.id, pair.user_id, pair.client_seed, pair.server_seed,
             pair.server_seed_hash, 0, 1, pair.created_at],
        )
        return pair

    # ── Seed pair life cycle ──────────────────────────────────

    def issue(self, user_id: str, client_seed: Optional[str] = None) -> SeedPair:
        """First commitment for a user. Use rotate() when one is already active."""
        _require(user_id, "user_id")
        if client_seed is None:
            client_seed = generate_client_seed()
        _require(client_seed, "client_seed")

        try:
            with self._locked(user_id) as db:
                if db.execute(_ACTIVE_SQL, [user_id]).fetchone() is not None:
                    raise LedgerError(ErrorKind.ALREADY_ACTIVE,
                                      f"User {user_id} already has an active seed pair")
                pair = self._insert_pair(db, user_id, client_seed)
        except INTEGRITY_ERRORS:
            # Another process won the race; the partial unique index said no
            raise LedgerError(ErrorKind.ALREADY_ACTIVE,
                              f"User {user_id} already has an active seed pair")

        logger.info(f"Issued seed pair {pair.id} for {user_id} (hash={pair.server_seed_hash})")
        return pair

    def ensure_active(self, user_id: str) -> SeedPair:
        """Active pair for a user, issuing one with a random client seed if needed."""
        try:
            return self.get_active(user_id)
        except LedgerError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
        try:
            return self.issue(user_id)
        except LedgerError as e:
            if e.kind is not ErrorKind.ALREADY_ACTIVE:
                raise
            return self.get_active(user_id)

    def rotate(self, user_id: str) -> RotationResult:
        """Reveal the active server seed and commit to a fresh one, atomically."""
        _require(user_id, "user_id")
        with self._locked(user_id) as db:
            current = self._active_for_update(db, user_id)
            revealed = current.reveal()
            db.execute(
                "UPDATE user_seeds SET is_active = 0, revealed_at = ? WHERE id = ? AND is_active = 1",
                [revealed.revealed_at, current.id],
            )
            successor = self._insert_pair(db, user_id, current.client_seed)

        logger.info(
            f"Rotated seeds for {user_id}: revealed {revealed.id} after {revealed.nonce} rounds, "
            f"new hash={successor.server_seed_hash}"
        )
        return RotationResult(revealed=revealed, active=successor)

    def set_client_seed(self, user_id: str, new_seed: str) -> None:
        """Change the client seed of the active pair. Nonce and server seed are untouched."""
        _require(user_id, "user_id")
        _require(new_seed, "client_seed")
        with self._locked(user_id) as db:
            current = self._active_for_update(db, user_id)
            db.execute("UPDATE user_seeds SET client_seed = ? WHERE id = ?", [new_seed, current.id])
        logger.info(f"Client seed updated for {user_id} on pair {current.id}")

    # ── Rounds ────────────────────────────────────────────────

    def next_nonce(self, user_id: str) -> int:
        """Reserve the nonce for the round about to be played."""
        _require(user_id, "user_id")
        with self._locked(user_id) as db:
            current = self._active_for_update(db, user_id)
            db.execute("UPDATE user_seeds SET nonce = nonce + 1 WHERE id = ?", [current.id])
        return current.nonce

    def play_round(self, user_id: str) -> RoundRecord:
        """Consume a nonce, derive its ticket and record the commitment, in one step.

        The returned record carries the published hash, not the server seed.
        """
        _require(user_id, "user_id")
        with self._locked(user_id) as db:
            current = self._active_for_update(db, user_id)
            nonce = current.nonce
            ticket = ticket_from_hash(combine_seeds(current.client_seed, current.server_seed, nonce))
            db.execute("UPDATE user_seeds SET nonce = nonce + 1 WHERE id = ?", [current.id])
            record = RoundRecord(
                client_seed=current.client_seed,
                server_seed_hash=current.server_seed_hash,
                nonce=nonce,
                claimed_ticket=ticket,
                round_id=uuid.uuid4().hex,
                user_id=user_id,
                seed_pair_id=current.id,
                created_at=utc_now(),
            )
            db.execute(
                "INSERT INTO round_records (id, user_id, seed_pair_id, client_seed, "
                "server_seed_hash, nonce, ticket, created_at) VALUES (?,?,?,?,?,?,?,?)",
                [record.round_id, user_id, current.id, record.client_seed,
                 record.server_seed_hash, nonce, ticket, record.created_at],
            )
        return record

    # ── Reads ─────────────────────────────────────────────────

    def get_active(self, user_id: str) -> SeedPair:
        _require(user_id, "user_id")
        with self._reader() as db:
            row = db.execute(_ACTIVE_SQL, [user_id]).fetchone()
        if row is None:
            raise LedgerError(ErrorKind.NOT_FOUND, f"No active seed pair for user {user_id}")
        return SeedPair.from_row(row)

    def get_pair(self, seed_pair_id: str) -> SeedPair:
        with self._reader() as db:
            row = db.execute("SELECT * FROM user_seeds WHERE id = ?", [seed_pair_id]).fetchone()
        if row is None:
            raise LedgerError(ErrorKind.NOT_FOUND, f"Seed pair {seed_pair_id} not found")
        return SeedPair.from_row(row)

    def history(self, user_id: str, limit: Optional[int] = None) -> list[SeedPair]:
        """Revealed pairs for a user, newest first."""
        _require(user_id, "user_id")
        if limit is None:
            limit = ServerConfig.MAX_HISTORY
        elif isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise LedgerError(ErrorKind.INVALID_INPUT, f"limit must be a positive integer, got {limit!r}")
        limit = min(limit, ServerConfig.MAX_HISTORY)
        with self._reader() as db:
            rows = db.execute(
                "SELECT * FROM user_seeds WHERE user_id = ? AND is_active = 0 "
                "ORDER BY revealed_at DESC LIMIT ?",
                [user_id, limit],
            ).fetchall()
        return [SeedPair.from_row(r) for r in rows]

    def rounds_for_pair(self, seed_pair_id: str) -> list[RoundRecord]:
        """Every round played on a seed pair, in nonce order."""
        with self._reader() as db:
            rows = db.execute(
                "SELECT * FROM round_records WHERE seed_pair_id = ? ORDER BY nonce",
                [seed_pair_id],
            ).fetchall()
        return [_record_from_row(r) for r in rows]

    def revealed_round(self, round_id: str) -> RoundRecord:
        """A played round with its server seed attached, once the pair is revealed."""
        with self._reader() as db:
            row = db.execute(
                "SELECT r.*, s.server_seed AS pair_server_seed, s.is_active AS pair_active "
                "FROM round_records r JOIN user_seeds s ON s.id = r.seed_pair_id "
                "WHERE r.id = ?",
                [round_id],
            ).fetchone()
        if row is None:
            raise LedgerError(ErrorKind.NOT_FOUND, f"Round {round_id} not found")
        if row["pair_active"]:
            raise LedgerError(ErrorKind.NOT_REVEALED,
                              f"Round {round_id} uses a seed pair that has not been rotated yet")
        return _record_from_row(row).with_server_seed(row["pair_server_seed"])


def _record_from_row(row: dict) -> RoundRecord:
    return RoundRecord(
        client_seed=row["client_seed"],
        server_seed_hash=row["server_seed_hash"],
        nonce=int(row["nonce"]),
        claimed_ticket=int(row["ticket"]),
        round_id=row["id"],
        user_id=row["user_id"],
        seed_pair_id=row["seed_pair_id"],
        created_at=row.get("created_at"),
    )
