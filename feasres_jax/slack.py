"""Slack reformulation of general constraints.

Every constraint row that is not an equality (lower, upper, range or free
row) receives a slack variable, turning

    lcon_j <= c_j(x) <= ucon_j

into the equality ``c_j(x) - s_j = 0`` with the simple bound
``lcon_j <= s_j <= ucon_j``. Equality rows are left untouched. The new
variable vector is ``z = [x; s]``; the constraint Jacobian becomes
``[J, -E]`` where ``E`` scatters the slacks into their rows, and every
Hessian gains a zero slack block.

The slack problem owns the problem it wraps: closing it closes the inner
problem.
"""

import logging

import jax.numpy as jnp
import numpy as np

from feasres_jax.meta import NLSMeta, ProblemMeta
from feasres_jax.nls import AbstractNLSProblem
from feasres_jax.problem import AbstractProblem
from feasres_jax.utils import pad_lower

logger = logging.getLogger(__name__)


def slack_rows(meta: ProblemMeta) -> np.ndarray:
    """Indices of the constraint rows that need a slack variable."""
    return np.setdiff1d(np.arange(meta.ncon), meta.jfix)


def _slack_meta(meta: ProblemMeta, jslack: np.ndarray) -> ProblemMeta:
    ns = len(jslack)
    dtype = meta.x0.dtype
    lcon = meta.lcon.copy()
    lcon[jslack] = 0
    return ProblemMeta(
        meta.nvar + ns,
        x0=np.concatenate([meta.x0, np.zeros(ns, dtype=dtype)]),
        lvar=np.concatenate([meta.lvar, meta.lcon[jslack]]),
        uvar=np.concatenate([meta.uvar, meta.ucon[jslack]]),
        ncon=meta.ncon,
        y0=meta.y0,
        lcon=lcon,
        ucon=lcon.copy(),
        nnzj=meta.nnzj + ns,
        nnzh=meta.nnzh,
        lin=meta.lin,
        minimize=meta.minimize,
        name=f"{meta.name}-slack",
    )


class _SlackMixin:
    """Objective and constraint evaluations of ``z = [x; s]``."""

    def _setup_slacks(self, inner: AbstractProblem) -> ProblemMeta:
        self.inner = inner
        self._jslack = slack_rows(inner.meta)
        self._n = inner.meta.nvar
        self._ns = len(self._jslack)
        return _slack_meta(inner.meta, self._jslack)

    def _release(self) -> None:
        self.inner.close()

    def _split(self, z):
        z = jnp.asarray(z)
        return z[: self._n], z[self._n :]

    def _zeros(self, *shape):
        return jnp.zeros(shape, dtype=self.meta.x0.dtype)

    def _obj(self, z):
        x, _ = self._split(z)
        return self.inner.obj(x)

    def _grad(self, z):
        x, _ = self._split(z)
        return jnp.concatenate([self.inner.grad(x), self._zeros(self._ns)])

    def _cons(self, z):
        x, s = self._split(z)
        return self.inner.cons(x).at[self._jslack].add(-s)

    def _jac(self, z):
        x, _ = self._split(z)
        J = self.inner.jac(x)
        E = self._zeros(self.meta.ncon, self._ns)
        E = E.at[self._jslack, np.arange(self._ns)].set(1)
        return jnp.concatenate([J, -E], axis=1)

    def _jac_structure(self):
        rows, cols = self.inner.jac_structure()
        slack_cols = self._n + np.arange(self._ns, dtype=cols.dtype)
        return (
            np.concatenate([rows, self._jslack.astype(rows.dtype)]),
            np.concatenate([cols, slack_cols]),
        )

    def _jac_coord(self, z):
        x, _ = self._split(z)
        vals = self.inner.jac_coord(x)
        return jnp.concatenate([vals, -jnp.ones(self._ns, dtype=vals.dtype)])

    def _jprod(self, z, v):
        x, _ = self._split(z)
        vx, vs = self._split(v)
        return self.inner.jprod(x, vx).at[self._jslack].add(-vs)

    def _jtprod(self, z, u):
        x, _ = self._split(z)
        u = jnp.asarray(u)
        return jnp.concatenate([self.inner.jtprod(x, u), -u[self._jslack]])

    def _hess(self, z, y, obj_weight):
        x, _ = self._split(z)
        H = self.inner.hess(x, y, obj_weight=obj_weight)
        return pad_lower(H, self.meta.nvar)

    def _hess_structure(self):
        return self.inner.hess_structure()

    def _hess_coord(self, z, y, obj_weight):
        x, _ = self._split(z)
        return self.inner.hess_coord(x, y, obj_weight=obj_weight)

    def _hprod(self, z, v, y, obj_weight):
        x, _ = self._split(z)
        vx, _ = self._split(v)
        Hv = self.inner.hprod(x, vx, y=y, obj_weight=obj_weight)
        return jnp.concatenate([Hv, self._zeros(self._ns)])


class SlackProblem(_SlackMixin, AbstractProblem):
    """Problem with slack variables for its non-equality constraints.

    Attributes:
        inner: The wrapped problem, owned by this instance.
    """

    def __init__(self, inner: AbstractProblem):
        meta = self._setup_slacks(inner)
        super().__init__(meta)


class SlackNLSProblem(_SlackMixin, AbstractNLSProblem):
    """Least-squares problem with slack variables for its inequalities.

    The residual ignores the slacks: ``F(x, s) = F(x)``, so every residual
    derivative has a zero slack block.

    Attributes:
        inner: The wrapped least-squares problem, owned by this instance.
    """

    def __init__(self, inner: AbstractNLSProblem):
        meta = self._setup_slacks(inner)
        nls_meta = NLSMeta(
            inner.nls_meta.nequ,
            meta.nvar,
            x0=meta.x0,
            nnzj=inner.nls_meta.nnzj,
            nnzh=inner.nls_meta.nnzh,
            lin=inner.nls_meta.lin,
        )
        super().__init__(meta, nls_meta)

    def _residual(self, z):
        x, _ = self._split(z)
        return self.inner.residual(x)

    def _jac_residual(self, z):
        x, _ = self._split(z)
        J = self.inner.jac_residual(x)
        return jnp.concatenate([J, self._zeros(J.shape[0], self._ns)], axis=1)

    def _jac_structure_residual(self):
        return self.inner.jac_structure_residual()

    def _jac_coord_residual(self, z):
        x, _ = self._split(z)
        return self.inner.jac_coord_residual(x)

    def _jprod_residual(self, z, v):
        x, _ = self._split(z)
        vx, _ = self._split(v)
        return self.inner.jprod_residual(x, vx)

    def _jtprod_residual(self, z, u):
        x, _ = self._split(z)
        Jtu = self.inner.jtprod_residual(x, u)
        return jnp.concatenate([Jtu, self._zeros(self._ns)])

    def _hess_residual(self, z, v):
        x, _ = self._split(z)
        return pad_lower(self.inner.hess_residual(x, v), self.meta.nvar)

    def _hess_structure_residual(self):
        return self.inner.hess_structure_residual()

    def _hess_coord_residual(self, z, v):
        x, _ = self._split(z)
        return self.inner.hess_coord_residual(x, v)

    def _jth_hess_residual(self, z, i):
        x, _ = self._split(z)
        return pad_lower(self.inner.jth_hess_residual(x, i), self.meta.nvar)

    def _hprod_residual(self, z, i, v):
        x, _ = self._split(z)
        vx, _ = self._split(v)
        Hiv = self.inner.hprod_residual(x, i, vx)
        return jnp.concatenate([Hiv, self._zeros(self._ns)])


def slack_problem(problem: AbstractProblem) -> AbstractProblem:
    """Introduce slack variables for the non-equality rows of ``problem``.

    Least-squares problems keep their residual API and are wrapped in a
    ``SlackNLSProblem``; any other problem becomes a ``SlackProblem``. The
    returned problem takes ownership of ``problem``.
    """
    if isinstance(problem, AbstractNLSProblem):
        slack = SlackNLSProblem(problem)
    else:
        slack = SlackProblem(problem)
    logger.debug(
        "Added %d slack variables to %s (%d constraints)",
        slack._ns,
        problem.meta.name,
        problem.meta.ncon,
    )
    return slack
