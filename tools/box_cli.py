#!/usr/bin/env python3
"""
BOXENGINE — Provably Fair & Box Config CLI

Usage:
    python -m tools.box_cli hash "my server seed"
    python -m tools.box_cli ticket my-client <server_seed> 0 --count 5
    python -m tools.box_cli verify --client-seed c --server-seed s --server-seed-hash h --nonce 0 --ticket 913501
    python -m tools.box_cli solve items.json --price 100 --rtp 0.30 --volatility high
    python -m tools.box_cli simulate items.json --price 100 --rounds 200000

Exit codes: 0 ok, 1 verification failed / config infeasible, 2 bad input.
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config.box_schema import AutoConfigRequest, ErrorKind
from config.settings import SolverConfig
from sim_engine.boxes import BoxSimulator
from tools.provably_fair import (
    FairnessError, OutcomeVerifier, RoundRecord, combine_seeds, digest, ticket_from_hash,
)
from tools.rtp_solver import RTPSolver, format_currency, format_probability, rtp_proof


# ═══════════════════════════════════════════════════════════
# Fairness commands
# ═══════════════════════════════════════════════════════════

def _cmd_hash(args, console) -> int:
    console.print(digest(args.value))
    return 0


def _cmd_ticket(args, console) -> int:
    table = Table(title=escape(f"Tickets — client seed {args.client_seed!r}"))
    table.add_column("Nonce", justify="right", style="cyan")
    table.add_column("Ticket", justify="right", style="bold")
    table.add_column("SHA-256")
    for nonce in range(args.nonce, args.nonce + args.count):
        h = combine_seeds(args.client_seed, args.server_seed, nonce)
        table.add_row(str(nonce), f"{ticket_from_hash(h):,}", h)
    console.print(table)
    return 0


def _cmd_verify(args, console) -> int:
    result = OutcomeVerifier().verify(RoundRecord(
        client_seed=args.client_seed,
        server_seed_hash=args.server_seed_hash,
        nonce=args.nonce,
        claimed_ticket=args.ticket,
        server_seed=args.server_seed,
    ))
    if result.valid:
        console.print(f"[green]✅ PASS[/green] ticket {result.computed_ticket:,} verified")
        return 0
    console.print(f"[red]❌ FAIL[/red] {result.reason.value}: {escape(result.message)}")
    return 1


# ═══════════════════════════════════════════════════════════
# Box config commands
# ═══════════════════════════════════════════════════════════

def _load_request(args) -> AutoConfigRequest:
    """Items file is either a bare list of items or a full request object."""
    data = json.loads(Path(args.items_file).read_text(encoding="utf-8"))
    if isinstance(data, list):
        data = {"items": data}
    if args.price is not None:
        data["box_price"] = args.price
    if args.rtp is not None:
        data["target_rtp"] = args.rtp
    if args.volatility is not None:
        data["volatility"] = args.volatility
    return AutoConfigRequest.model_validate(data)


def _print_tiers(result, console):
    table = Table(title=f"Tier table — {format_currency(result.box_price)} box, "
                        f"{result.volatility.value} volatility")
    table.add_column("Tier", style="bold")
    table.add_column("Items", justify="right")
    table.add_column("Avg value", justify="right")
    table.add_column("Probability", justify="right")
    table.add_column("EV", justify="right")
    for t in result.tiers:
        table.add_row(
            f"[{t.color}]{t.display_name}[/]",
            str(len(t.items)),
            format_currency(t.avg_value),
            format_probability(t.probability),
            format_currency(t.ev_contribution),
        )
    console.print(table)
    console.print(
        f"RTP [bold]{result.actual_rtp*100:.4f}%[/bold] "
        f"(target {result.target_rtp*100:.2f}%), house edge {result.house_edge*100:.4f}%"
    )


def _solve(args, console):
    result = RTPSolver().solve_request(_load_request(args))
    if not result.success:
        console.print(f"[red]❌ {result.error_kind.value}[/red] {escape(result.error)}")
    return result


def _failure_code(result) -> int:
    return 2 if result.error_kind is ErrorKind.INVALID_INPUT else 1


def _cmd_solve(args, console) -> int:
    result = _solve(args, console)
    if not result.success:
        return _failure_code(result)
    if args.json:
        console.print_json(json.dumps({**result.model_dump(mode="json"), "proof": rtp_proof(result)}))
    else:
        _print_tiers(result, console)
        proof = rtp_proof(result)
        console.print(
            f"Checks: P_sum={proof['probability_sum_check']} RTP={proof['rtp_check']} "
            f"monotonic={proof['monotonic_check']} reachable={proof['reachability_check']}"
        )
    return 0


def _cmd_simulate(args, console) -> int:
    result = _solve(args, console)
    if not result.success:
        return _failure_code(result)
    _print_tiers(result, console)
    console.print(f"[cyan]Running {args.rounds:,}-round simulation...[/cyan]")
    sim = BoxSimulator().simulate(result, rounds=args.rounds, seed=args.seed)
    console.print(sim.summary())
    return 0 if sim.rtp_pass else 1


# ═══════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provably fair tickets and box RTP configuration")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("hash", help="SHA-256 of a string (server seed commitment)")
    p.add_argument("value")
    p.set_defaults(func=_cmd_hash)

    p = sub.add_parser("ticket", help="Derive tickets for consecutive nonces")
    p.add_argument("client_seed")
    p.add_argument("server_seed")
    p.add_argument("nonce", type=int)
    p.add_argument("--count", type=int, default=1)
    p.set_defaults(func=_cmd_ticket)

    p = sub.add_parser("verify", help="Verify a revealed round")
    p.add_argument("--client-seed", required=True)
    p.add_argument("--server-seed", required=True)
    p.add_argument("--server-seed-hash", required=True)
    p.add_argument("--nonce", type=int, required=True)
    p.add_argument("--ticket", type=int, required=True)
    p.set_defaults(func=_cmd_verify)

    for name, func, helptext in (
        ("solve", _cmd_solve, "Solve tier probabilities for an item catalogue"),
        ("simulate", _cmd_simulate, "Solve, then validate with a Monte Carlo run"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("items_file", help="JSON list of items or a full auto-config request")
        p.add_argument("--price", type=float, help="Box price")
        p.add_argument("--rtp", type=float, help=f"Target RTP 0-1 (default {SolverConfig.DEFAULT_TARGET_RTP})")
        p.add_argument("--volatility", choices=list(SolverConfig.VOLATILITY_TEMPLATES))
        p.set_defaults(func=func)
    sub.choices["solve"].add_argument("--json", action="store_true", help="Print result + proof as JSON")
    sub.choices["simulate"].add_argument("--rounds", type=int, default=100_000)
    sub.choices["simulate"].add_argument("--seed", type=int, default=42)
    return parser


def main(argv=None, console=None) -> int:
    args = build_parser().parse_args(argv)
    console = console or Console()
    try:
        return args.func(args, console)
    except FairnessError as e:
        console.print(f"[red]❌ {e.kind.value}[/red] {escape(e.message)}")
        return 2
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]❌ Cannot read input:[/red] {e}")
        return 2
    except ValidationError as e:
        console.print(f"[red]❌ Invalid request:[/red] {e.errors()[0]['msg']}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
