"""
stiffode: implicit integrator for stiff ODEs and index-1 DAEs

    M u' = f(u, p, t)

with pluggable Jacobian construction (analytic, dense / colored finite
differences, matrix-free) and linear solves (LU, torch GMRES, PETSc KSP).
"""
import logging

from .buffers import BufferManager, JacobianBuffer, JacobianKind, allocate
from .coloring import color_columns
from .common_integrator import CommonIntegrator, integrate
from .controller import RejectReason, StepController, StepDecision
from .errors import (IntegrationError, LinearSolveError, MaxItersExceeded,
                     NonConvergenceError, ShapeMismatchError,
                     SingularSystemError, StepFailure, StiffODEError,
                     UserFunctionError, UserJacobianError)
from .gmres import gmres
from .jacobian import JacobianConstructor, JacobianMode, JacVecOperator
from .linsolve import (DirectSolver, IterationOperator, KrylovSolver,
                       PETScSolver, build_solve_fns, iteration_matrix,
                       make_strategy)
from .options import SolverOptions
from .precond import ILUPreconditioner, JacobiPreconditioner, ilu_factory
from .problem import ProblemSpec, band_prototype
from .simplified_newton import NewtonResult, NewtonStatus, simplified_newton
from .trajectory import ReturnCode, Trajectory

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
