# options.py
from dataclasses import dataclass, fields, replace
from typing import Any, Optional, Sequence, Tuple

from .simplified_newton import newton_tolerance

METHODS    = ("radau5", "bdf2")
JAC_MODES  = ("auto", "analytic", "numeric-dense", "numeric-sparse",
              "matrix-free")
JAC_METHODS = ("fd", "autograd")
LINSOLVERS = ("lu", "gmres", "petsc")


@dataclass
class SolverOptions:
    """
    Integrator configuration.

    Tolerances
    ----------
    reltol, abstol : error test is  |err_i| <= abstol + reltol * |u_i|  (RMS)
    maxiters       : budget of accepted steps
    dt_min, dt_max : step-size bounds (`None` → 10 ulp(t) and tf - t0)
    dt_init        : first step (`None` → Hairer/Wanner starting heuristic)

    Jacobian
    --------
    jac_mode   : "auto" | "analytic" | "numeric-dense" | "numeric-sparse"
                 | "matrix-free"
    jac_method : "fd" (finite differences) | "autograd" (torch autograd)

    Linear solve
    ------------
    linsolve       : "lu" (direct) | "gmres" (torch GMRES) | "petsc" (KSP)
    preconditioner : object with ``apply(v)`` or a factory ``f(W) -> obj``
    """

    method: str = "radau5"

    # tolerances / step bounds
    reltol: float = 1e-3
    abstol: float = 1e-6
    maxiters: int = 100_000
    dt_min: Optional[float] = None
    dt_max: Optional[float] = None
    dt_init: Optional[float] = None

    # Jacobian construction
    jac_mode: str = "auto"
    jac_method: str = "fd"
    num_threads: int = 1

    # linear solve
    linsolve: str = "lu"
    krylov_rtol: float = 1e-6
    krylov_atol: float = 0.0
    krylov_maxiters: int = 200
    krylov_restart: int = 30
    preconditioner: Any = None
    precond_side: str = "right"
    petsc_pc: str = "ilu"
    singular_tol: float = 1e-14
    blas_threads: Optional[int] = None

    # Newton
    newton_maxiters: int = 7
    newton_tol: Optional[float] = None
    newton_divergence: float = 0.99

    # Jacobian refresh
    jac_refresh_steps: Optional[int] = 20
    jac_refresh_ratio: Optional[float] = 10.0
    jac_refresh_rate: float = 1e-3
    newton_fail_refresh: int = 2

    # step-size control
    safety: float = 0.9
    min_factor: float = 0.2
    max_factor: float = 10.0
    hold_band: Tuple[float, float] = (1.0, 1.2)
    max_rejects: int = 50

    # output / driver
    saveat: Optional[Sequence[float]] = None
    abort: Any = None
    raise_on_failure: bool = True
    check_dae_init: bool = True

    def __post_init__(self):
        if self.method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, "
                             f"got {self.method!r}")
        if self.jac_mode not in JAC_MODES:
            raise ValueError(f"jac_mode must be one of {JAC_MODES}, "
                             f"got {self.jac_mode!r}")
        if self.jac_method not in JAC_METHODS:
            raise ValueError(f"jac_method must be one of {JAC_METHODS}, "
                             f"got {self.jac_method!r}")
        if self.linsolve not in LINSOLVERS:
            raise ValueError(f"linsolve must be one of {LINSOLVERS}, "
                             f"got {self.linsolve!r}")
        if self.precond_side not in ("left", "right"):
            raise ValueError("precond_side must be 'left' or 'right'")
        if self.reltol <= 0 or self.abstol < 0:
            raise ValueError("reltol must be > 0 and abstol >= 0")
        if self.maxiters < 1 or self.newton_maxiters < 1:
            raise ValueError("maxiters and newton_maxiters must be >= 1")
        if self.krylov_maxiters < 1 or self.krylov_restart < 1:
            raise ValueError("krylov_maxiters and krylov_restart must be >= 1")
        if self.num_threads < 1:
            raise ValueError("num_threads must be >= 1")
        if self.dt_min is not None and self.dt_min < 0:
            raise ValueError("dt_min must be >= 0")
        if self.dt_max is not None and self.dt_max <= 0:
            raise ValueError("dt_max must be > 0")
        if (self.dt_min is not None and self.dt_max is not None
                and self.dt_min > self.dt_max):
            raise ValueError("dt_min must not exceed dt_max")
        if self.dt_init is not None and self.dt_init <= 0:
            raise ValueError("dt_init must be > 0")
        if not 0.0 < self.newton_divergence:
            raise ValueError("newton_divergence must be > 0")
        if not 0.0 < self.min_factor < 1.0 < self.max_factor:
            raise ValueError("need 0 < min_factor < 1 < max_factor")
        lo, hi = self.hold_band
        if lo > hi:
            raise ValueError("hold_band must be (low, high) with low <= high")
        if self.jac_refresh_ratio is not None and self.jac_refresh_ratio <= 1:
            raise ValueError("jac_refresh_ratio must be > 1")
        if self.saveat is not None:
            self.saveat = tuple(float(s) for s in self.saveat)
            if any(b < a for a, b in zip(self.saveat, self.saveat[1:])):
                raise ValueError("saveat must be non-decreasing")

    def resolved_newton_tol(self, eps: float) -> float:
        """Newton stopping tolerance: `newton_tol`, else from `reltol`."""
        if self.newton_tol is not None:
            return self.newton_tol
        return newton_tolerance(self.reltol, eps)

    def replace(self, **changes) -> "SolverOptions":
        return replace(self, **changes)

    @classmethod
    def from_kwargs(cls, options: Optional["SolverOptions"] = None,
                    **kwargs) -> "SolverOptions":
        """Merge keyword overrides into `options` (or the defaults)."""
        known = {f.name for f in fields(cls)}
        unknown = set(kwargs) - known
        if unknown:
            raise TypeError(f"unknown solver option(s): {sorted(unknown)}")
        if options is None:
            return cls(**kwargs)
        return replace(options, **kwargs) if kwargs else options
