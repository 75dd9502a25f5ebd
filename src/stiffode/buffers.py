# buffers.py
"""
State & Jacobian buffer manager.

All large mutable arrays of one integration are allocated here, once.  The
Jacobian buffer's shape and (for sparse buffers) its CSR pattern are fixed at
allocation; the Jacobian constructor only ever writes values.
"""
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import scipy.sparse as sp
import torch

from .errors import ShapeMismatchError
from .problem import as_pattern

_NP_DTYPE = {torch.float32: np.float32, torch.float64: np.float64,
             torch.complex64: np.complex64, torch.complex128: np.complex128}


class JacobianKind(Enum):
    DENSE    = "dense"
    SPARSE   = "sparse"
    OPERATOR = "operator"


class JacobianBuffer:
    """Working Jacobian of one of three kinds (see `JacobianKind`)."""

    def __init__(self, kind: JacobianKind, n: int, *,
                 dense: Optional[torch.Tensor] = None,
                 sparse: Optional[sp.csr_matrix] = None):
        self.kind = kind
        self.n = n
        self.dense = dense
        self.sparse = sparse
        self.operator = None                  # JacVecOperator, set on build
        self._stale = True

        if sparse is not None:
            self._indptr = sparse.indptr.copy()
            self._indices = sparse.indices.copy()
            # COO view of the fixed pattern, in CSR storage order
            self.rows = np.repeat(np.arange(n), np.diff(sparse.indptr))
            self.cols = sparse.indices.copy()

    # ---- staleness ------------------------------------------------------
    def mark_stale(self) -> None:
        self._stale = True

    def mark_fresh(self) -> None:
        self._stale = False

    def is_stale(self) -> bool:
        return self._stale

    # ---- shape ----------------------------------------------------------
    @property
    def shape(self) -> Tuple[int, int]:
        return (self.n, self.n)

    @property
    def nnz(self) -> int:
        if self.kind is JacobianKind.SPARSE:
            return int(self._indices.size)
        return self.n * self.n

    def pattern_intact(self) -> bool:
        s = self.sparse
        return (s.indptr.shape == self._indptr.shape
                and s.indices.shape == self._indices.shape
                and np.array_equal(s.indptr, self._indptr)
                and np.array_equal(s.indices, self._indices))

    # ---- action ---------------------------------------------------------
    def matvec(self, v: torch.Tensor) -> torch.Tensor:
        """J @ v for every kind; complex v is allowed."""
        if self.kind is JacobianKind.DENSE:
            J = self.dense
            if v.is_complex() and not J.is_complex():
                J = J.to(v.dtype)
            return J @ v
        if self.kind is JacobianKind.SPARSE:
            x = v.detach().cpu().numpy()
            return torch.as_tensor(self.sparse @ x, dtype=v.dtype)
        if self.operator is None:
            raise RuntimeError("matrix-free Jacobian used before build()")
        return self.operator.matvec(v)

    def to_dense(self) -> torch.Tensor:
        """Dense copy of an explicit Jacobian (diagnostics and tests)."""
        if self.kind is JacobianKind.DENSE:
            return self.dense.clone()
        if self.kind is JacobianKind.SPARSE:
            return torch.as_tensor(self.sparse.toarray())
        raise TypeError("an operator-only Jacobian has no explicit entries")


def allocate(prototype_or_shape: Union[int, Tuple[int, int], Any], *,
             dtype: torch.dtype = torch.float64,
             matrix_free: bool = False) -> JacobianBuffer:
    """
    Allocate a Jacobian buffer.

    Parameters
    ----------
    prototype_or_shape : n, (n, n), or a matrix whose nonzero pattern is
                         authoritative (scipy sparse / tensor / ndarray)
    dtype              : element type of the buffer
    matrix_free        : allocate an operator slot instead of entries
    """
    if isinstance(prototype_or_shape, int):
        n, pattern = prototype_or_shape, None
    elif isinstance(prototype_or_shape, tuple):
        if len(prototype_or_shape) != 2 or \
                prototype_or_shape[0] != prototype_or_shape[1]:
            raise ShapeMismatchError(f"Jacobian must be square, got "
                                     f"{prototype_or_shape}")
        n, pattern = int(prototype_or_shape[0]), None
    else:
        shape = tuple(prototype_or_shape.shape)
        if len(shape) != 2 or shape[0] != shape[1]:
            raise ShapeMismatchError(f"Jacobian prototype must be square, "
                                     f"got {shape}")
        n = int(shape[0])
        pattern = as_pattern(prototype_or_shape, n)

    if matrix_free:
        return JacobianBuffer(JacobianKind.OPERATOR, n)
    if pattern is None:
        return JacobianBuffer(JacobianKind.DENSE, n,
                              dense=torch.zeros(n, n, dtype=dtype))
    data = np.zeros(pattern.nnz, dtype=_NP_DTYPE[dtype])
    csr = sp.csr_matrix((data, pattern.indices.copy(), pattern.indptr.copy()),
                        shape=(n, n))
    return JacobianBuffer(JacobianKind.SPARSE, n, sparse=csr)


class BufferManager:
    """Owns the solution vector, the Jacobian buffer and scratch vectors."""

    def __init__(self, problem, kind: JacobianKind):
        n, dtype = problem.n, problem.dtype
        self.u = problem.u0.clone()
        if kind is JacobianKind.SPARSE:
            if problem.pattern is None:
                raise ValueError("a sparse Jacobian needs a jac_prototype")
            self.jacobian = allocate(problem.pattern, dtype=dtype)
        else:
            self.jacobian = allocate(n, dtype=dtype,
                                     matrix_free=kind is JacobianKind.OPERATOR)
        self._scratch: Dict[str, torch.Tensor] = {}

    def scratch(self, name: str, shape, dtype=None) -> torch.Tensor:
        """Named work array, allocated on first request and reused after."""
        shape = tuple(shape) if not isinstance(shape, int) else (shape,)
        buf = self._scratch.get(name)
        dtype = dtype or self.u.dtype
        if buf is None or tuple(buf.shape) != shape or buf.dtype != dtype:
            buf = torch.zeros(shape, dtype=dtype)
            self._scratch[name] = buf
        return buf

    def commit(self, u_new: torch.Tensor) -> torch.Tensor:
        """Overwrite the solution vector in place with an accepted state."""
        self.u.copy_(u_new)
        return self.u

    # convenience pass-throughs used by the controller
    def mark_stale(self) -> None:
        self.jacobian.mark_stale()

    def is_stale(self) -> bool:
        return self.jacobian.is_stale()
