"""
Pluggable numerical models for fluid-particle coupling.

    VelocityBlend: builds the advection velocity from the current and
                   previous DEM velocities.
    HistoryKernel: per-step contribution to the history-force accumulator,
                   and the force recovered from it.
    ForceModel:    instantaneous fluid force on a particle.

These are deliberately simple reference models; the coupler only relies on
their interfaces.
"""

import numba
import numpy as np
from abc import ABC, abstractmethod

from softparticle.core.particle import ParticleState
from softparticle.physics.fluid import FluidField, FluidSample


# ============================================================================
# Advection velocity
# ============================================================================

class VelocityBlend(ABC):

    @abstractmethod
    def __call__(self, current: np.ndarray, previous: np.ndarray) -> np.ndarray:
        """Advection velocity for the coming step."""


class LinearBlend(VelocityBlend):
    """weight * current + (1 - weight) * previous."""

    def __init__(self, weight: float = 0.5):
        if not 0.0 <= weight <= 1.0:
            raise ValueError(f"Blend weight must lie in [0, 1], got {weight}")
        self.weight = float(weight)

    @classmethod
    def current(cls) -> 'LinearBlend':
        return cls(1.0)

    @classmethod
    def averaged(cls) -> 'LinearBlend':
        return cls(0.5)

    def __call__(self, current, previous):
        return self.weight * np.asarray(current) + (1.0 - self.weight) * np.asarray(previous)

    def __repr__(self) -> str:
        return f"LinearBlend(weight={self.weight})"


# ============================================================================
# History (Basset) force
# ============================================================================

@numba.njit(fastmath=True, cache=True)
def basset_step_weight(n: float) -> float:
    """
    Weight of step n in the discrete history integral.

    Integral of 1/sqrt(s) over [n, n+1], in units of the time step:
        w(n) = 2 (sqrt(n+1) - sqrt(n))
    """
    return 2.0 * (np.sqrt(n + 1.0) - np.sqrt(n))


class HistoryKernel(ABC):

    @abstractmethod
    def contribution(self, state: ParticleState, sample: FluidSample, dt: float) -> np.ndarray:
        """Amount added to history_force_sum for the step just completed."""

    @abstractmethod
    def force(self, state: ParticleState, fluid: FluidField, dt: float) -> np.ndarray:
        """History force from the current accumulator."""


class NullHistoryKernel(HistoryKernel):
    """No history force; the step counter still advances."""

    def contribution(self, state, sample, dt):
        return np.zeros(3)

    def force(self, state, fluid, dt):
        return np.zeros(3)


class BassetHistoryKernel(HistoryKernel):
    """
    Additive discrete Basset kernel.

    Each step adds w(n) * du_rel, where du_rel is the change of
    slip velocity over the step (fluid assumed steady over the step, so
    du_rel = -(u - u_old)). The sum is never recomputed, only extended.

        F_B = 3/2 d^2 sqrt(pi rho_f mu / dt) * history_force_sum
    """

    def contribution(self, state, sample, dt):
        if state.history_steps == 0.0:
            return np.zeros(3)
        du_rel = -(np.asarray(state.velocity_external) - np.asarray(state.velocity_previous))
        return basset_step_weight(state.history_steps) * du_rel

    def force(self, state, fluid, dt):
        coeff = 1.5 * state.diameter**2 * np.sqrt(np.pi * fluid.density * fluid.viscosity / dt)
        return coeff * np.asarray(state.history_force_sum)


# ============================================================================
# Instantaneous forces
# ============================================================================

class ForceModel(ABC):

    @abstractmethod
    def force(self, state: ParticleState, sample: FluidSample,
              fluid: FluidField, dt: float) -> np.ndarray:
        """Fluid force on the particle [N]."""


class StokesDrag(ForceModel):
    """F = 3 pi mu d (u_f - u_p)."""

    def force(self, state, sample, fluid, dt):
        slip = sample.velocity - np.asarray(state.velocity_external)
        return 3.0 * np.pi * fluid.viscosity * state.diameter * slip


class AddedMass(ForceModel):
    """F = -C_a rho_f V du_p/dt, using the start-of-step velocity."""

    def __init__(self, coefficient: float = 0.5):
        self.coefficient = coefficient

    def force(self, state, sample, fluid, dt):
        if state.history_steps == 0.0:
            return np.zeros(3)
        dudt = (np.asarray(state.velocity_external) - np.asarray(state.velocity_previous)) / dt
        return -self.coefficient * fluid.density * state.volume * dudt
