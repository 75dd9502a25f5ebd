import numpy as np
import pytest
import scipy.sparse as sp
import torch

from stiffode import (JacobianConstructor, JacobianKind, JacobianMode,
                      ProblemSpec, ShapeMismatchError, UserFunctionError,
                      UserJacobianError, allocate)
from stiffode.jacobian import kind_for, resolve_mode


def smooth(u, p, t):
    return torch.stack([torch.sin(u[0]) * u[1],
                        u[0] ** 2 + 3.0 * u[2],
                        torch.exp(u[1]) - u[2] * t])


def smooth_jac(u, p, t):
    u0, u1, u2 = (float(v) for v in u)
    return torch.tensor([[np.cos(u0) * u1, np.sin(u0), 0.0],
                         [2.0 * u0, 0.0, 3.0],
                         [0.0, np.exp(u1), -t]], dtype=torch.float64)


U = torch.tensor([0.3, -0.7, 1.2], dtype=torch.float64)
T = 0.5


@pytest.fixture
def smooth_problem():
    return ProblemSpec(smooth, U, (0.0, 1.0), jac=smooth_jac)


# --- mode resolution -------------------------------------------------------

def test_auto_mode(smooth_problem, brusselator):
    assert resolve_mode(smooth_problem) is JacobianMode.ANALYTIC
    f, u0, proto = brusselator
    sparse = ProblemSpec(f, u0, (0, 1), jac_prototype=proto)
    assert resolve_mode(sparse) is JacobianMode.NUMERIC_SPARSE
    assert kind_for(JacobianMode.NUMERIC_SPARSE, sparse) is JacobianKind.SPARSE
    plain = ProblemSpec(f, u0, (0, 1))
    assert resolve_mode(plain) is JacobianMode.NUMERIC_DENSE
    with pytest.raises(ValueError):
        resolve_mode(plain, "analytic")
    with pytest.raises(ValueError):
        resolve_mode(plain, "numeric-sparse")


# --- dense -----------------------------------------------------------------

def test_numeric_dense_matches_analytic(smooth_problem):
    buf = allocate(3)
    JacobianConstructor(smooth_problem, JacobianMode.NUMERIC_DENSE) \
        .build(buf, U, None, T)
    assert not buf.is_stale()
    torch.testing.assert_close(buf.dense, smooth_jac(U, None, T),
                               rtol=1e-6, atol=1e-6)


def test_autograd_dense_matches_analytic(smooth_problem):
    buf = allocate(3)
    JacobianConstructor(smooth_problem, JacobianMode.NUMERIC_DENSE,
                        method="autograd").build(buf, U, None, T)
    torch.testing.assert_close(buf.dense, smooth_jac(U, None, T))


def test_analytic_dense_copied(smooth_problem):
    buf = allocate(3)
    jc = JacobianConstructor(smooth_problem, JacobianMode.ANALYTIC)
    jc.build(buf, U, None, T)
    torch.testing.assert_close(buf.dense, smooth_jac(U, None, T))
    assert jc.njev == 1


def test_repeated_builds_are_identical(smooth_problem):
    jc = JacobianConstructor(smooth_problem, JacobianMode.NUMERIC_DENSE)
    a, b = allocate(3), allocate(3)
    jc.build(a, U, None, T)
    jc.build(b, U, None, T)
    jc.build(b, U, None, T)
    assert torch.equal(a.dense, b.dense)


def test_analytic_wrong_shape():
    prob = ProblemSpec(smooth, U, (0, 1),
                       jac=lambda u, p, t: torch.zeros(2, 2))
    with pytest.raises(UserJacobianError):
        JacobianConstructor(prob, JacobianMode.ANALYTIC).build(
            allocate(3), U, None, T)
    assert issubclass(UserJacobianError, ShapeMismatchError)


def test_analytic_non_finite():
    prob = ProblemSpec(smooth, U, (0, 1),
                       jac=lambda u, p, t: torch.full((3, 3), float("nan")))
    with pytest.raises(UserFunctionError):
        JacobianConstructor(prob, JacobianMode.ANALYTIC).build(
            allocate(3), U, None, T)


def test_analytic_raising():
    def jac(u, p, t):
        raise RuntimeError("no jacobian today")

    prob = ProblemSpec(smooth, U, (0, 1), jac=jac)
    with pytest.raises(UserFunctionError):
        JacobianConstructor(prob, JacobianMode.ANALYTIC).build(
            allocate(3), U, None, T)


def test_analytic_inplace_dense(smooth_problem):
    def jac(J, u, p, t):
        J.copy_(smooth_jac(u, p, t))

    prob = ProblemSpec(smooth, U, (0, 1), jac=jac)
    assert prob.jac_inplace
    buf = allocate(3)
    JacobianConstructor(prob, JacobianMode.ANALYTIC).build(buf, U, None, T)
    torch.testing.assert_close(buf.dense, smooth_jac(U, None, T))


# --- sparse ----------------------------------------------------------------

def test_sparse_matches_dense(brusselator):
    f, u0, proto = brusselator
    prob = ProblemSpec(f, u0, (0, 1), jac_prototype=proto)
    jc = JacobianConstructor(prob, JacobianMode.NUMERIC_SPARSE)
    assert jc.n_colors < prob.n

    sparse = allocate(prob.pattern)
    jc.build(sparse, u0, None, 0.0)
    dense = allocate(prob.n)
    JacobianConstructor(prob, JacobianMode.NUMERIC_DENSE).build(
        dense, u0, None, 0.0)
    torch.testing.assert_close(sparse.to_dense(), dense.dense,
                               rtol=1e-6, atol=1e-8)
    assert sparse.pattern_intact()


def test_threaded_coloring_is_deterministic(brusselator):
    f, u0, proto = brusselator
    prob = ProblemSpec(f, u0, (0, 1), jac_prototype=proto)
    serial, threaded = allocate(prob.pattern), allocate(prob.pattern)
    JacobianConstructor(prob, "numeric-sparse").build(serial, u0, None, 0.0)
    JacobianConstructor(prob, "numeric-sparse", num_threads=4).build(
        threaded, u0, None, 0.0)
    np.testing.assert_array_equal(serial.sparse.data, threaded.sparse.data)


def test_analytic_sparse_outside_pattern():
    proto = sp.identity(3, format="csr")
    prob = ProblemSpec(smooth, U, (0, 1), jac=smooth_jac, jac_prototype=proto)
    with pytest.raises(UserJacobianError):
        JacobianConstructor(prob, JacobianMode.ANALYTIC).build(
            allocate(prob.pattern), U, None, T)


def test_analytic_sparse_inside_pattern():
    J = smooth_jac(U, None, T)
    proto = sp.csr_matrix(np.ones((3, 3)))
    prob = ProblemSpec(smooth, U, (0, 1), jac=lambda u, p, t: sp.csr_matrix(
        smooth_jac(u, p, t).numpy()), jac_prototype=proto)
    buf = allocate(prob.pattern)
    JacobianConstructor(prob, JacobianMode.ANALYTIC).build(buf, U, None, T)
    torch.testing.assert_close(buf.to_dense(), J)


@pytest.mark.filterwarnings("ignore::scipy.sparse.SparseEfficiencyWarning")
def test_analytic_inplace_sparse_must_keep_pattern():
    def jac(J, u, p, t):
        J[0, 2] = 1.0                       # not in the prototype

    prob = ProblemSpec(smooth, U, (0, 1), jac=jac,
                       jac_prototype=sp.identity(3, format="csr"))
    with pytest.raises(UserJacobianError):
        JacobianConstructor(prob, JacobianMode.ANALYTIC).build(
            allocate(prob.pattern), U, None, T)


def test_analytic_inplace_sparse_values():
    def jac(J, u, p, t):
        J.data[:] = [2.0, 3.0, 4.0]

    prob = ProblemSpec(smooth, U, (0, 1), jac=jac,
                       jac_prototype=sp.identity(3, format="csr"))
    buf = allocate(prob.pattern)
    JacobianConstructor(prob, JacobianMode.ANALYTIC).build(buf, U, None, T)
    np.testing.assert_array_equal(buf.sparse.diagonal(), [2.0, 3.0, 4.0])


# --- matrix-free -----------------------------------------------------------

@pytest.mark.parametrize("method", ["fd", "autograd"])
def test_matrix_free_matches_analytic(smooth_problem, method):
    buf = allocate(3, matrix_free=True)
    JacobianConstructor(smooth_problem, JacobianMode.MATRIX_FREE,
                        method=method).build(buf, U, None, T)
    J = smooth_jac(U, None, T)
    v = torch.tensor([0.2, -1.0, 0.4], dtype=torch.float64)
    torch.testing.assert_close(buf.matvec(v), J @ v, rtol=1e-6, atol=1e-6)

    vc = torch.complex(v, torch.tensor([1.0, 0.5, -0.3], dtype=torch.float64))
    torch.testing.assert_close(buf.matvec(vc), J.to(vc.dtype) @ vc,
                               rtol=1e-6, atol=1e-6)


def test_matrix_free_zero_vector(smooth_problem):
    buf = allocate(3, matrix_free=True)
    JacobianConstructor(smooth_problem, "matrix-free").build(buf, U, None, T)
    assert torch.count_nonzero(buf.matvec(torch.zeros(3,
                                                      dtype=torch.float64))) == 0


def test_mode_buffer_mismatch(smooth_problem):
    jc = JacobianConstructor(smooth_problem, JacobianMode.MATRIX_FREE)
    with pytest.raises(ValueError):
        jc.build(allocate(3), U, None, T)
