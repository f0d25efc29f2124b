"""
BOXENGINE — Provably Fair Core

Commit-reveal seeds and deterministic ticket derivation for box openings.

Architecture:
    Server generates server_seed and publishes server_seed_hash = SHA-256(server_seed).
    Client provides client_seed (or it's auto-generated).
    For each box opening (nonce = 0, 1, 2, ...):
        h = SHA-256(client_seed + ":" + server_seed + ":" + nonce)
        ticket = (int(h[:13], 16) % 1_000_000) + 1
    When the seed pair is rotated, server_seed is revealed so anyone can check
    SHA-256(server_seed) == server_seed_hash and recompute every ticket.

Usage:
    from tools.provably_fair import derive_ticket, OutcomeVerifier, RoundRecord

    ticket = derive_ticket("my-seed", server_seed, nonce=0)

    result = OutcomeVerifier().verify(RoundRecord(
        client_seed="my-seed", server_seed_hash=committed_hash,
        nonce=0, claimed_ticket=ticket, server_seed=revealed_seed,
    ))
    assert result.valid
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass, replace, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from config.box_schema import ErrorKind
from config.settings import FairnessConfig

logger = logging.getLogger("boxengine.fairness")


# ═══════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════

class FairnessError(Exception):
    """Recoverable failure with a typed kind (bad input, missing seed pair, ...)."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{kind.value}: {self.message}")


class HashFailure(RuntimeError):
    """The platform could not compute SHA-256. Fatal; never caught by library code."""

    kind = ErrorKind.HASH_FAILURE


# ═══════════════════════════════════════════════════════════════
# HashCommit
# ═══════════════════════════════════════════════════════════════

def digest(data: Union[bytes, str]) -> str:
    """Lowercase 64-char SHA-256 hex digest. Strings are UTF-8 encoded."""
    if isinstance(data, str):
        try:
            data = data.encode("utf-8")
        except UnicodeEncodeError as e:
            raise FairnessError(ErrorKind.INVALID_INPUT, f"Input is not encodable as UTF-8: {e}")
    elif not isinstance(data, (bytes, bytearray, memoryview)):
        raise FairnessError(ErrorKind.INVALID_INPUT, f"Cannot hash {type(data).__name__}")
    try:
        return hashlib.sha256(data).hexdigest()
    except (TypeError, ValueError, MemoryError) as e:
        raise HashFailure(f"SHA-256 failed: {e}") from e


def generate_server_seed() -> str:
    """Fresh secret server seed (256 bits from the OS CSPRNG, hex)."""
    return os.urandom(FairnessConfig.SERVER_SEED_BYTES).hex()


def generate_client_seed() -> str:
    """Default client seed for users who never picked one."""
    return os.urandom(FairnessConfig.CLIENT_SEED_BYTES).hex()


# ═══════════════════════════════════════════════════════════════
# TicketDeriver
# ═══════════════════════════════════════════════════════════════

def _check_round_inputs(client_seed: str, server_seed: str, nonce: int) -> None:
    if not isinstance(client_seed, str) or not client_seed:
        raise FairnessError(ErrorKind.INVALID_INPUT, "client_seed must be a non-empty string")
    if not isinstance(server_seed, str) or not server_seed:
        raise FairnessError(ErrorKind.INVALID_INPUT, "server_seed must be a non-empty string")
    if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
        raise FairnessError(ErrorKind.INVALID_INPUT, f"nonce must be an integer >= 0, got {nonce!r}")


def round_message(client_seed: str, server_seed: str, nonce: int) -> str:
    """The exact string that gets hashed: "{client_seed}:{server_seed}:{nonce}"."""
    sep = FairnessConfig.SEPARATOR
    return f"{client_seed}{sep}{server_seed}{sep}{nonce}"


def combine_seeds(client_seed: str, server_seed: str, nonce: int) -> str:
    """SHA-256 of the round message (hex)."""
    _check_round_inputs(client_seed, server_seed, nonce)
    return digest(round_message(client_seed, server_seed, nonce))


def ticket_from_hash(hex_hash: str) -> int:
    """First 13 hex chars (52 bits) → ticket in [1, 1_000_000]."""
    head = hex_hash[:FairnessConfig.TICKET_HEX_CHARS]
    if len(head) != FairnessConfig.TICKET_HEX_CHARS:
        raise FairnessError(ErrorKind.INVALID_INPUT, f"Hash too short: {hex_hash!r}")
    try:
        value = int(head, 16)
    except ValueError:
        raise FairnessError(ErrorKind.INVALID_INPUT, f"Not a hex digest: {hex_hash!r}")
    return (value % FairnessConfig.TOTAL_TICKETS) + 1


def derive_ticket(client_seed: str, server_seed: str, nonce: int) -> int:
    """Deterministic ticket for one round. Same inputs, same ticket, always."""
    return ticket_from_hash(combine_seeds(client_seed, server_seed, nonce))


# ═══════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════

def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class SeedState(str, Enum):
    ACTIVE = "active"          # server_seed secret, nonce advancing
    REVEALED = "revealed"      # retired: server_seed public, record frozen


@dataclass(frozen=True)
class SeedPair:
    """One committed (client seed, server seed) pair. Immutable snapshot."""
    id: str
    user_id: str
    client_seed: str
    server_seed: str            # Secret while active
    server_seed_hash: str       # Published at issuance
    nonce: int = 0
    is_active: bool = True
    created_at: Optional[str] = None
    revealed_at: Optional[str] = None

    @property
    def state(self) -> SeedState:
        return SeedState.ACTIVE if self.is_active else SeedState.REVEALED

    def reveal(self, at: Optional[str] = None) -> "SeedPair":
        """Active → Revealed. The only transition; it cannot be undone."""
        if not self.is_active:
            raise FairnessError(ErrorKind.INVALID_INPUT, f"Seed pair {self.id} is already revealed")
        return replace(self, is_active=False, revealed_at=at or utc_now())

    def public_view(self) -> dict:
        """What may be shown to anyone. Never includes an active server seed."""
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "client_seed": self.client_seed,
            "server_seed_hash": self.server_seed_hash,
            "nonce": self.nonce,
            "state": self.state.value,
            "created_at": self.created_at,
            "revealed_at": self.revealed_at,
        }
        if self.state is SeedState.REVEALED:
            data["server_seed"] = self.server_seed
        return data

    @classmethod
    def from_row(cls, row: dict) -> "SeedPair":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            client_seed=row["client_seed"],
            server_seed=row["server_seed"],
            server_seed_hash=row["server_seed_hash"],
            nonce=int(row["nonce"]),
            is_active=bool(row["is_active"]),
            created_at=row.get("created_at"),
            revealed_at=row.get("revealed_at"),
        )


@dataclass(frozen=True)
class RoundRecord:
    """One played round, as committed before reveal (server_seed=None) or after."""
    client_seed: str
    server_seed_hash: str
    nonce: int
    claimed_ticket: int
    server_seed: Optional[str] = None
    round_id: Optional[str] = None
    user_id: Optional[str] = None
    seed_pair_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_revealed(self) -> bool:
        return bool(self.server_seed)

    def with_server_seed(self, server_seed: str) -> "RoundRecord":
        return replace(self, server_seed=server_seed)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VerificationResult:
    """Outcome of replaying one round. reason is set whenever valid is False."""
    valid: bool
    reason: Optional[ErrorKind] = None
    computed_ticket: Optional[int] = None
    computed_hash: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reason": self.reason.value if self.reason else None,
            "computed_ticket": self.computed_ticket,
            "computed_hash": self.computed_hash,
            "message": self.message,
        }


def demo_round(client_seed: Optional[str] = None) -> RoundRecord:
    """One throwaway round for guests: fresh seeds, nonce 0, nothing stored.

    The server seed is revealed at once since no balance rides on it, so the
    record verifies immediately.
    """
    if client_seed is None:
        client_seed = "demo-" + os.urandom(4).hex()
    server_seed = generate_server_seed()
    return RoundRecord(
        client_seed=client_seed,
        server_seed_hash=digest(server_seed),
        nonce=0,
        claimed_ticket=derive_ticket(client_seed, server_seed, 0),
        server_seed=server_seed,
        created_at=utc_now(),
    )


# ═══════════════════════════════════════════════════════════════
# OutcomeVerifier
# ═══════════════════════════════════════════════════════════════

class OutcomeVerifier:
    """Replays the commitment and ticket derivation for a revealed round.

    Stateless and read-only: anyone holding the revealed server seed can run
    it any number of times and get the same answer.
    """

    @staticmethod
    def verify_seed(server_seed: str, server_seed_hash: str) -> bool:
        """SHA-256(server_seed) == the hash published before the round."""
        computed = digest(server_seed)
        expected = (server_seed_hash or "").strip().lower()
        return hmac.compare_digest(computed.encode(), expected.encode("utf-8"))

    def verify(self, record: RoundRecord) -> VerificationResult:
        if not record.is_revealed:
            return VerificationResult(
                valid=False, reason=ErrorKind.INVALID_INPUT,
                message="Round has no revealed server seed yet",
            )

        # 1. Commitment check always runs first
        if not self.verify_seed(record.server_seed, record.server_seed_hash):
            logger.warning(
                f"SEED_SUBSTITUTED on round {record.round_id or '?'} "
                f"(nonce={record.nonce}, committed={record.server_seed_hash})"
            )
            return VerificationResult(
                valid=False, reason=ErrorKind.SEED_SUBSTITUTED,
                message="Server seed hash does not match the published commitment",
            )

        # 2. Ticket replay
        try:
            combined = combine_seeds(record.client_seed, record.server_seed, record.nonce)
        except FairnessError as e:
            return VerificationResult(valid=False, reason=e.kind, message=e.message)
        computed = ticket_from_hash(combined)

        if computed != record.claimed_ticket:
            logger.warning(
                f"TICKET_MISMATCH on round {record.round_id or '?'}: "
                f"computed {computed}, claimed {record.claimed_ticket}"
            )
            return VerificationResult(
                valid=False, reason=ErrorKind.TICKET_MISMATCH,
                computed_ticket=computed, computed_hash=combined,
                message=f"Ticket mismatch: computed {computed}, claimed {record.claimed_ticket}",
            )

        return VerificationResult(valid=True, computed_ticket=computed, computed_hash=combined)

    def audit_report(self, seed_pair: SeedPair, records: list) -> dict:
        """Full audit log for a revealed seed pair and the rounds it produced."""
        rounds = []
        for rec in records:
            if not rec.is_revealed and seed_pair.state is SeedState.REVEALED:
                rec = rec.with_server_seed(seed_pair.server_seed)
            result = self.verify(rec)
            rounds.append({
                "round_id": rec.round_id,
                "nonce": rec.nonce,
                "claimed_ticket": rec.claimed_ticket,
                **result.to_dict(),
            })

        return {
            "seed_pair_id": seed_pair.id,
            "state": seed_pair.state.value,
            "client_seed": seed_pair.client_seed,
            "server_seed_hash": seed_pair.server_seed_hash,
            "server_seed": seed_pair.server_seed if seed_pair.state is SeedState.REVEALED else None,
            "commitment_valid": (
                self.verify_seed(seed_pair.server_seed, seed_pair.server_seed_hash)
                if seed_pair.state is SeedState.REVEALED else None
            ),
            "total_rounds": len(rounds),
            "all_valid": all(r["valid"] for r in rounds),
            "rounds": rounds,
            "verification_instructions": {
                "step_1": "Verify: SHA-256(server_seed) == server_seed_hash",
                "step_2": "For each round: h = SHA-256(client_seed + ':' + server_seed + ':' + nonce)",
                "step_3": "ticket = (int(h[0:13], 16) % 1000000) + 1",
                "tools": "Use any SHA-256 calculator to verify independently",
            },
        }


# ═══════════════════════════════════════════════════════════════
# JS Code Generator (client-side verification)
# ═══════════════════════════════════════════════════════════════

def generate_verification_js() -> str:
    """Standalone JavaScript verifier players can run in any browser.

    Must stay byte-for-byte equivalent to digest/derive_ticket above.
    """
    return '''
// ═══ PROVABLY FAIR VERIFICATION (BOXENGINE) ═══
// Verify any box opening once its server seed has been revealed.

async function sha256(value) {
    const data = new TextEncoder().encode(value);
    const buf = await crypto.subtle.digest('SHA-256', data);
    return Array.from(new Uint8Array(buf)).map(b => b.toString(16).padStart(2, '0')).join('');
}

function ticketFromHash(hexHash) {
    // 13 hex chars = 52 bits, exact in a JS number
    return (parseInt(hexHash.slice(0, 13), 16) % 1000000) + 1;
}

async function deriveTicket(clientSeed, serverSeed, nonce) {
    return ticketFromHash(await sha256(clientSeed + ':' + serverSeed + ':' + nonce));
}

async function verifyResult(clientSeed, serverSeed, serverSeedHash, nonce, claimedTicket) {
    if ((await sha256(serverSeed)) !== serverSeedHash.trim().toLowerCase()) {
        return { valid: false, reason: 'SEED_SUBSTITUTED' };
    }
    const computedTicket = await deriveTicket(clientSeed, serverSeed, nonce);
    if (computedTicket !== claimedTicket) {
        return { valid: false, reason: 'TICKET_MISMATCH', computedTicket };
    }
    return { valid: true, computedTicket };
}
'''


# ═══════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    server_seed = generate_server_seed()
    committed = digest(server_seed)
    client_seed = "test_client_seed_123"
    print(f"Server hash: {committed}")
    print(f"Client seed: {client_seed}")

    verifier = OutcomeVerifier()
    for nonce in range(3):
        ticket = derive_ticket(client_seed, server_seed, nonce)
        result = verifier.verify(RoundRecord(
            client_seed=client_seed, server_seed_hash=committed,
            nonce=nonce, claimed_ticket=ticket, server_seed=server_seed,
        ))
        print(f"  nonce={nonce} ticket={ticket:>7} {'✅ PASS' if result.valid else '❌ FAIL'}")

    print(f"\nRevealed server seed: {server_seed}")
