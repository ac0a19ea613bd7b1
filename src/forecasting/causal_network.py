"""
Causal-network read-out and intervention simulation.

The effective connectivity of the learned map at the cohort prior point is
its Jacobian there,

    C = A + W · diag(1[B μ − θ > 0]) · B

so C_ij is how much dimension j tonight moves dimension i tomorrow.
Off-diagonal entries above the edge threshold become directed edges
j → i; diagonal entries are reported as self weights.  Nothing here
depends on a particular user.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from forecasting.config import ForecastConfig
from forecasting.constants import DIMENSION_INDEX, DIMENSIONS, PRIOR_STATE, Z_95
from forecasting.models import CausalEdge, CausalNetwork, InterventionSimulation, SideEffect
from forecasting.plrnn_core import PLRNNCore

log = logging.getLogger("causal_network")

INTERVENTIONS = ("increase", "decrease", "stabilize")
SIDE_EFFECT_MIN = 0.1
# Nights with a state difference above this count toward the effect duration
EFFECT_PERSISTENCE_MIN = 0.01


def effective_connectivity(core: PLRNNCore) -> np.ndarray:
    return core.jacobian(np.asarray(PRIOR_STATE, dtype=np.float64))


def extract_causal_network(core: PLRNNCore, config: ForecastConfig) -> CausalNetwork:
    C = effective_connectivity(core)
    n = len(DIMENSIONS)
    thr = config.causal_edge_threshold

    edges: List[CausalEdge] = []
    for i in range(n):
        for j in range(n):
            if i != j and abs(C[i, j]) > thr:
                edges.append(CausalEdge(source=DIMENSIONS[j], target=DIMENSIONS[i], weight=round(float(C[i, j]), 4)))

    off = np.abs(C) * (np.abs(C) > thr)
    np.fill_diagonal(off, 0.0)
    strength = off.sum(axis=0) + off.sum(axis=1)
    central = DIMENSIONS[int(np.argmax(strength))]

    loops = []
    for i in range(n):
        for j in range(i + 1, n):
            if off[i, j] > 0 and off[j, i] > 0:
                loops.append([DIMENSIONS[i], DIMENSIONS[j]])

    network = CausalNetwork(
        nodes=list(DIMENSIONS),
        edges=edges,
        self_weights={DIMENSIONS[i]: round(float(C[i, i]), 4) for i in range(n)},
        density=len(edges) / (n * (n - 1)),
        central_node=central,
        feedback_loops=loops,
    )
    log.debug("Causal network: %d edges, density %.2f, central %s", len(edges), network.density, central)
    return network


def simulate_intervention(
    core: PLRNNCore,
    config: ForecastConfig,
    *,
    z0: Sequence[float],
    var0: Sequence[float],
    process_var: Sequence[float],
    target: str,
    intervention: str,
    magnitude: float,
    nights: Optional[int] = None,
) -> InterventionSimulation:
    """Compare a free-running baseline with a perturbed trajectory.

    increase / decrease push the target dimension by *magnitude*
    (normalized units) on the first night and let the dynamics carry it;
    stabilize pulls the target back toward its starting value every night
    with strength *magnitude* (clipped to [0, 1]).
    """
    if target not in DIMENSION_INDEX:
        raise ValueError(f"Unknown intervention target '{target}'")
    if intervention not in INTERVENTIONS:
        raise ValueError(f"Unknown intervention '{intervention}' (expected one of {', '.join(INTERVENTIONS)})")
    if magnitude <= 0:
        raise ValueError("magnitude must be positive")

    steps = nights or config.prediction_horizon
    k = DIMENSION_INDEX[target]
    start = np.asarray(z0, dtype=np.float64)

    base = np.zeros((steps, len(DIMENSIONS)))
    pert = np.zeros_like(base)
    zb = start.copy()
    zp = start.copy()
    if intervention != "stabilize":
        zp[k] += magnitude if intervention == "increase" else -magnitude
    pull = float(np.clip(magnitude, 0.0, 1.0))

    for t in range(steps):
        zb = core.step(zb)
        zp = core.step(zp)
        if intervention == "stabilize":
            zp[k] = (1 - pull) * zp[k] + pull * start[k]
        base[t] = zb
        pert[t] = zp

    diff = pert - base
    peak_idx = np.argmax(np.abs(diff), axis=0)
    effects = {DIMENSIONS[d]: round(float(diff[peak_idx[d], d]), 4) for d in range(len(DIMENSIONS))}

    norms = np.linalg.norm(diff, axis=1)
    time_to_peak = (int(np.argmax(norms)) + 1) * config.dt
    duration = int(np.sum(norms > EFFECT_PERSISTENCE_MIN)) * config.dt

    side_effects = [
        SideEffect(dimension=name, effect=val)
        for name, val in effects.items()
        if name != target and abs(val) > SIDE_EFFECT_MIN
    ]

    roll = core.rollout(start, var0, steps, process_var)
    spread = float(np.sqrt(np.mean(roll.variances[-1])))
    confidence = float(np.clip(1 - Z_95 * spread, 0.0, 1.0))

    return InterventionSimulation(
        target=target,
        intervention=intervention,
        magnitude=magnitude,
        effects=effects,
        time_to_peak_hours=time_to_peak,
        duration_hours=duration,
        side_effects=side_effects,
        confidence=confidence,
    )
