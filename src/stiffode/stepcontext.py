# stepcontext.py ------------------------------------------------------------
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import torch


def _counters() -> dict:
    return dict(nfev=0, njev=0, nlu=0, nsolve=0, nnewton=0,
                naccept=0, nreject=0, nkrylov=0)


@dataclass
class StepContext:
    # solution state
    t:       float
    y:       torch.Tensor
    h:       float
    tf:      float
    f:       torch.Tensor                  # f(y, p, t), cached

    # factorization
    solve_fns:   Optional[List[Callable]] = None
    fact_shifts: Optional[Tuple] = None     # shifts the solve_fns belong to

    # Jacobian bookkeeping
    jac_current:     bool = False          # J evaluated at (t, y)
    h_jac:           Optional[float] = None
    steps_since_jac: int = 0

    # Newton bookkeeping
    fac_conv:        float = 1.0
    newton_failures: int = 0               # consecutive

    # flags between calls
    first_step:    bool = True
    last_rejected: bool = False

    stats: dict = field(default_factory=_counters)

    def invalidate_factorization(self) -> None:
        self.solve_fns = None
        self.fact_shifts = None


@dataclass
class StepAttempt:
    """Outcome of one kernel attempt from (t, y) with step h."""
    newton:  "NewtonResult"
    y_new:   Optional[torch.Tensor] = None
    err:     float = math.inf
    stages:  Optional[torch.Tensor] = None       # kernel data for accept()
    failure: Optional[BaseException] = None      # linear-solve error in Newton
