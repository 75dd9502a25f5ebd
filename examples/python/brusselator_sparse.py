#!/usr/bin/env python3
# brusselator_sparse.py  –  1-D Brusselator, colored FD Jacobian with
# sparse LU, ILU-preconditioned GMRES or PETSc KSP, and a matrix-free run

import argparse
import time

import numpy as np
import scipy.sparse as sp
import torch

from stiffode import ProblemSpec, band_prototype, ilu_factory, integrate

p = argparse.ArgumentParser()
p.add_argument('--n', type=int, default=200, help='grid cells')
p.add_argument('--tf', type=float, default=10.0)
p.add_argument('--rtol', type=float, default=1e-6)
p.add_argument('--threads', type=int, default=1,
               help='worker threads for the colored Jacobian')
p.add_argument('--petsc', action='store_true', help='also run PETSc KSP')
args = p.parse_args()

n = args.n
A, B, alpha = 1.0, 3.0, 0.02
dx2 = (1.0 / (n + 1))**2

def lap(w, bc):
    wp = torch.cat([w.new_tensor([bc]), w, w.new_tensor([bc])])
    return (wp[:-2] - 2*wp[1:-1] + wp[2:]) / dx2

def brusselator(y, p, t):
    u, v = y[:n], y[n:]
    du = A + u*u*v - (B + 1)*u + alpha*lap(u, 1.0)
    dv = B*u - u*u*v + alpha*lap(v, 3.0)
    return torch.cat([du, dv])

x = torch.arange(1, n + 1, dtype=torch.float64) / (n + 1)
y0 = torch.cat([1.0 + torch.sin(2*np.pi*x),
                torch.full((n,), 3.0, dtype=torch.float64)])
tri, eye = band_prototype(n, 1, 1), sp.identity(n, format='csr')
proto = sp.bmat([[tri, eye], [eye, tri]], format='csr')
prob = ProblemSpec(brusselator, y0, (0.0, args.tf), jac_prototype=proto)

runs = [('sparse LU', dict(jac_mode='numeric-sparse', linsolve='lu')),
        ('GMRES + ILU', dict(jac_mode='numeric-sparse', linsolve='gmres',
                             preconditioner=ilu_factory(drop_tol=1e-4))),
        ('matrix-free GMRES', dict(jac_mode='matrix-free', linsolve='gmres'))]
if args.petsc:
    runs.append(('PETSc KSP', dict(jac_mode='numeric-sparse',
                                   linsolve='petsc', krylov_rtol=1e-8)))

ref = None
for label, opts in runs:
    tic = time.perf_counter()
    traj = integrate(prob, reltol=args.rtol, abstol=1e-3 * args.rtol,
                     num_threads=args.threads, **opts)
    toc = time.perf_counter() - tic
    u_end = traj.u[-1]
    if ref is None:
        ref = u_end
    s = traj.stats
    print(f"{label:>18}: steps={s['naccept']} rejected={s['nreject']} "
          f"nfev={s['nfev']} njev={s['njev']} nlu={s['nlu']} "
          f"krylov={s['nkrylov']}  |u-u_ref|={float((u_end - ref).abs().max()):.2e}"
          f"  {toc:.2f}s")
