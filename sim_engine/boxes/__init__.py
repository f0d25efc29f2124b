"""
BOXENGINE — Box Simulation

Monte Carlo validation for solved mystery-box tier tables.

Usage:
    from sim_engine.boxes import BoxSimulator
    sim = BoxSimulator().simulate(result, rounds=100_000, seed=42)
    print(sim.summary())
"""

from sim_engine.boxes.simulator import BoxSimulator, BoxSimResult

__all__ = ["BoxSimulator", "BoxSimResult"]
