#!/usr/bin/env python3
# vdp_stiff.py  –  stiff Van der Pol, analytic vs numeric Jacobian

import argparse
import time

import torch

from stiffode import ProblemSpec, integrate

p = argparse.ArgumentParser()
p.add_argument('--mu', type=float, default=1e3)
p.add_argument('--tf', type=float, default=3e3)
p.add_argument('--rtol', type=float, default=1e-6)
p.add_argument('--atol', type=float, default=1e-8)
p.add_argument('--inplace', action='store_true',
               help='use the in-place right-hand side')
args = p.parse_args()

mu = args.mu

def vdp(u, p, t):
    x1, x2 = u[0], u[1]
    return torch.stack([x2, mu*(1 - x1**2)*x2 - x1])

def vdp_inplace(du, u, p, t):
    x1, x2 = u[0], u[1]
    du[0] = x2
    du[1] = mu*(1 - x1**2)*x2 - x1

def vdp_jac(u, p, t):
    x1, x2 = float(u[0]), float(u[1])
    return torch.tensor([[0.0, 1.0],
                         [-2*mu*x1*x2 - 1.0, mu*(1 - x1**2)]],
                        dtype=torch.float64)

f = vdp_inplace if args.inplace else vdp
for label, jac, mode in [('analytic', vdp_jac, 'analytic'),
                         ('finite differences', None, 'numeric-dense'),
                         ('autograd', None, 'numeric-dense')]:
    prob = ProblemSpec(f, [2.0, 0.0], (0.0, args.tf), jac=jac)
    method = 'autograd' if label == 'autograd' and not args.inplace else 'fd'
    tic = time.perf_counter()
    traj = integrate(prob, jac_mode=mode, jac_method=method,
                     reltol=args.rtol, abstol=args.atol)
    toc = time.perf_counter() - tic
    t, U = traj.as_tensors()
    s = traj.stats
    print(f"{label:>18}: x(tf)={U[-1, 0]:+.8f}  steps={s['naccept']} "
          f"rejected={s['nreject']}  nfev={s['nfev']}  njev={s['njev']}  "
          f"nlu={s['nlu']}  {toc:.2f}s")
