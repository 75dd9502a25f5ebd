# errors.py
"""
Exception hierarchy of the integrator.

Transient failures (Newton divergence, Krylov non-convergence, a singular
iteration matrix at one particular step size) are retried by the step
controller.  `UserFunctionError` and `ShapeMismatchError` describe a malformed
problem and are never retried.
"""
from typing import Any, Optional


class StiffODEError(Exception):
    """Base class of every error raised by stiffode."""


class UserFunctionError(StiffODEError):
    """A user callable raised, or returned NaN/Inf."""


class ShapeMismatchError(StiffODEError, ValueError):
    """A user matrix or vector disagrees with the declared shape."""


class UserJacobianError(ShapeMismatchError):
    """Analytic Jacobian does not fit the buffer shape or sparsity prototype."""


class LinearSolveError(StiffODEError):
    """Base class of linear-solve failures."""


class SingularSystemError(LinearSolveError):
    def __init__(self, message: str, *, pivot: Optional[float] = None):
        super().__init__(message)
        self.pivot = pivot


class NonConvergenceError(LinearSolveError):
    def __init__(self, message: str, *, iterations: int = 0,
                 residual: float = float("nan")):
        super().__init__(message)
        self.iterations = iterations
        self.residual = residual


class StepFailure(StiffODEError):
    """Retries exhausted: repeated rejection at (or below) the minimum step."""

    def __init__(self, message: str, *, t: float, h: float):
        super().__init__(message)
        self.t = t
        self.h = h


class MaxItersExceeded(StepFailure):
    """The accepted-step budget `maxiters` was used up before `tf`."""


class IntegrationError(StiffODEError):
    """
    Terminal failure of `integrate`.

    Attributes
    ----------
    t          : time of the last accepted state
    u          : last accepted state
    reason     : the exception that ended the integration
    trajectory : partial trajectory up to `t`
    """

    def __init__(self, message: str, *, t: float, u: Any,
                 reason: Optional[BaseException] = None,
                 trajectory: Any = None):
        super().__init__(message)
        self.t = t
        self.u = u
        self.reason = reason
        self.trajectory = trajectory
