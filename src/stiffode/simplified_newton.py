# simplified_newton.py
"""
Simplified Newton iteration shared by the step kernels.

The iteration matrix is frozen for the whole solve; the kernel supplies a
`correction(x)` closure that evaluates the stage residual at `x` and applies
the prepared linear solves.  Convergence is judged from the contraction rate
of successive increments (Hairer & Wanner, Sec. IV.8).
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import torch


class NewtonStatus(Enum):
    CONVERGED         = "converged"
    DIVERGED          = "diverged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"


@dataclass
class NewtonResult:
    status:   NewtonStatus
    x:        torch.Tensor   # last iterate
    n_iter:   int            # corrections applied
    rate:     float          # contraction estimate theta (0 after one iter)
    fac_conv: float          # carried into the next solve
    h_factor: float          # suggested step-size factor when not converged

    @property
    def converged(self) -> bool:
        return self.status is NewtonStatus.CONVERGED


def newton_tolerance(rtol: float, eps: float) -> float:
    """Hairer's FNEWT:  max(10 eps / rtol, min(0.03, sqrt(rtol)))."""
    return max(10.0 * eps / rtol, min(0.03, math.sqrt(rtol)))


# --------------------------------------------------------------------------- #
def simplified_newton(
    correction: Callable[[torch.Tensor], Optional[torch.Tensor]],
    x0:         torch.Tensor,
    norm:       Callable[[torch.Tensor], float],
    *,
    tol:        float,
    max_iters:  int   = 7,
    fac_conv:   float = 1.0,
    divergence_threshold: float = 0.99,
    eps:        float = 2.220446049250313e-16,
) -> NewtonResult:
    """
    Iterate  x ← x + correction(x)  until the predicted error is below `tol`.

    Parameters
    ----------
    correction : x ↦ dx, or None when the residual at x is not finite
    x0         : starting iterate (not modified)
    norm       : weighted norm of an increment
    tol        : Newton tolerance (see `newton_tolerance`)
    max_iters  : iteration cap
    fac_conv   : convergence factor carried over from the previous solve
    divergence_threshold : contraction rate regarded as divergence

    Returns
    -------
    NewtonResult
    """
    x = x0.clone()
    fac_conv = max(fac_conv, eps) ** 0.8
    theta = 0.0
    thq_old = 1.0
    old_nrm = 1.0

    for k in range(1, max_iters + 1):
        dx = correction(x)
        if dx is None:
            return NewtonResult(NewtonStatus.DIVERGED, x, k - 1, theta,
                                fac_conv, 0.5)
        nrm = float(norm(dx))
        if not math.isfinite(nrm):
            return NewtonResult(NewtonStatus.DIVERGED, x, k - 1, theta,
                                fac_conv, 0.5)

        if k > 1:
            thq = nrm / old_nrm
            theta = thq if k == 2 else math.sqrt(thq * thq_old)
            thq_old = thq

            # divergence?
            if theta >= divergence_threshold:
                return NewtonResult(NewtonStatus.DIVERGED, x, k, theta,
                                    fac_conv, 0.5)

            # slow convergence: predicted error after the cap still too big
            fac_conv = theta / (1.0 - theta)
            dyth = fac_conv * nrm * theta ** (max_iters - 1 - k) / tol
            if dyth >= 1.0:
                qnew = max(1e-4, min(20.0, dyth))
                hhfac = 0.8 * qnew ** (-1.0 / (4 + max_iters - 1 - k))
                return NewtonResult(NewtonStatus.MAX_ITER_EXCEEDED, x, k,
                                    theta, fac_conv, hhfac)

        old_nrm = max(nrm, eps)
        x = x + dx

        if fac_conv * nrm <= tol:
            return NewtonResult(NewtonStatus.CONVERGED, x, k, theta,
                                fac_conv, 1.0)

    return NewtonResult(NewtonStatus.MAX_ITER_EXCEEDED, x, max_iters, theta,
                        fac_conv, 0.5)
