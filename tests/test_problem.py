import numpy as np
import pytest
import scipy.sparse as sp
import torch

from stiffode import (ProblemSpec, ShapeMismatchError, SolverOptions,
                      UserFunctionError, band_prototype)


def _f(u, p, t):
    return -u


def _f_inplace(du, u, p, t):
    du[:] = -u


def test_u0_is_copied_and_promoted():
    u0 = [1, 2, 3]
    prob = ProblemSpec(_f, u0, (0, 1))
    assert prob.u0.dtype == torch.float64
    assert prob.n == 3
    assert prob.tspan == (0.0, 1.0)

    t0 = torch.ones(2, dtype=torch.float64)
    prob = ProblemSpec(_f, t0, (0.0, 1.0))
    t0[0] = 5.0
    assert prob.u0[0] == 1.0


def test_calling_convention_detection():
    assert ProblemSpec(_f, [1.0], (0, 1)).inplace is False
    assert ProblemSpec(_f_inplace, [1.0], (0, 1)).inplace is True
    assert ProblemSpec(lambda u, p, t, scale=2.0: -scale * u,
                       [1.0], (0, 1)).inplace is False


def test_rhs_both_conventions_agree():
    u = torch.tensor([1.0, -2.0])
    a = ProblemSpec(_f, u, (0, 1)).rhs(u, 0.0)
    b = ProblemSpec(_f_inplace, u, (0, 1)).rhs(u, 0.0)
    assert torch.equal(a, b)


def test_rhs_wraps_user_exceptions():
    def bad(u, p, t):
        raise KeyError("boom")

    prob = ProblemSpec(bad, [1.0], (0, 1))
    with pytest.raises(UserFunctionError):
        prob.rhs(prob.u0, 0.0)


def test_rhs_wrong_length():
    prob = ProblemSpec(lambda u, p, t: torch.zeros(3), [1.0, 2.0], (0, 1))
    with pytest.raises(ShapeMismatchError):
        prob.rhs(prob.u0, 0.0)


def test_backward_tspan_rejected():
    with pytest.raises(ValueError):
        ProblemSpec(_f, [1.0], (1.0, 0.0))


def test_mass_matrix_shape_and_dae_flag():
    with pytest.raises(ShapeMismatchError):
        ProblemSpec(_f, [1.0, 2.0], (0, 1), mass_matrix=torch.eye(3))

    ode = ProblemSpec(_f, [1.0, 2.0], (0, 1), mass_matrix=np.eye(2))
    assert not ode.is_dae
    dae = ProblemSpec(_f, [1.0, 2.0], (0, 1),
                      mass_matrix=sp.diags([1.0, 0.0]))
    assert dae.is_dae
    assert dae.mass_matrix.dtype == torch.float64


def test_jac_prototype_pattern():
    proto = band_prototype(5, 1, 1)
    prob = ProblemSpec(_f, torch.ones(5), (0, 1), jac_prototype=proto)
    assert prob.pattern.nnz == 13
    assert prob.pattern.has_sorted_indices

    with pytest.raises(ShapeMismatchError):
        ProblemSpec(_f, torch.ones(4), (0, 1), jac_prototype=proto)


def test_dense_prototype_counts_nonzeros():
    proto = torch.tensor([[1.0, 0.0], [2.0, 3.0]])
    prob = ProblemSpec(_f, torch.ones(2), (0, 1), jac_prototype=proto)
    assert prob.pattern.nnz == 3


def test_algebraic_residual():
    def g(u, p, t):
        return torch.stack([-u[0], u[0] + u[1] - 1.0])

    M = torch.diag(torch.tensor([1.0, 0.0]))
    prob = ProblemSpec(g, [0.5, 0.5], (0, 1), mass_matrix=M)
    assert prob.algebraic_residual(prob.u0, prob.rhs(prob.u0, 0.0)) == \
        pytest.approx(0.0, abs=1e-14)
    u_bad = torch.tensor([0.5, 0.0], dtype=torch.float64)
    assert prob.algebraic_residual(u_bad, prob.rhs(u_bad, 0.0)) == \
        pytest.approx(0.5)


def test_differential_projector():
    M = torch.tensor([[2.0, 0.0, 0.0],
                      [0.0, 0.0, 0.0],
                      [0.0, 0.0, 1.0]])
    prob = ProblemSpec(_f, [1.0, 2.0, 3.0], (0, 1), mass_matrix=M)
    expected = torch.diag(torch.tensor([1.0, 0.0, 1.0], dtype=torch.float64))
    torch.testing.assert_close(prob.differential_projector(), expected)
    assert ProblemSpec(_f, [1.0], (0, 1)).differential_projector() is None


# --- options ---------------------------------------------------------------

def test_options_validation():
    with pytest.raises(ValueError):
        SolverOptions(method="rk4")
    with pytest.raises(ValueError):
        SolverOptions(reltol=0.0)
    with pytest.raises(ValueError):
        SolverOptions(dt_min=1.0, dt_max=0.1)
    with pytest.raises(ValueError):
        SolverOptions(saveat=[0.0, 2.0, 1.0])


def test_options_from_kwargs_and_replace():
    base = SolverOptions(reltol=1e-5)
    merged = SolverOptions.from_kwargs(base, abstol=1e-9)
    assert merged.reltol == 1e-5 and merged.abstol == 1e-9
    assert base.abstol == 1e-6
    assert base.replace(method="bdf2").method == "bdf2"
    with pytest.raises(TypeError):
        SolverOptions.from_kwargs(None, rtol=1e-3)


def test_default_newton_tolerance():
    opts = SolverOptions(reltol=1e-3)
    assert opts.resolved_newton_tol(2.2e-16) == pytest.approx(0.03)
    assert SolverOptions(newton_tol=1e-2).resolved_newton_tol(2.2e-16) == 1e-2
