"""Feasibility residual least-squares model.

Given a problem

    min f(x)  s.t.  c_L <= c(x) <= c_U,  l <= x <= u,

the feasibility residual model is the bound-constrained nonlinear
least-squares problem

    min 1/2 ||c(x) - s||^2  s.t.  l <= x <= u,  c_L <= s <= c_U.

Slack variables ``s`` are introduced with ``slack_problem`` for every row
that is not an equality, so the model only ever wraps an
equality-constrained problem. Its residual is ``F(x) = c(x) - c_L`` and all
residual derivatives are forwarded to the constraint derivatives of the
wrapped problem. If the problem only has equality constraints ``c(x) = 0``,
the model is simply ``min 1/2 ||c(x)||^2``.

The objective Hessian is

    H(x) = J(x)^T J(x) + sum_i c_i(x) ∇²c_i(x)

where the second-order term is the wrapped constraint Hessian weighted by the
constraint values themselves (``∇²F_i = ∇²c_i`` since ``c_L`` is constant).
When ``c_L = 0``, which holds for every slack row, this is the exact Hessian
of ``1/2 ||F||^2``; otherwise it differs from it by ``sum_i c_L,i ∇²c_i(x)``.
It is available densely (``hess``) and as products (``hprod``), but not in
sparse coordinate form.

Instances mutate scratch buffers and counters in place and must not be
shared between threads without external locking.
"""

import logging
from typing import Optional

import jax.numpy as jnp
import numpy as np

from feasres_jax.errors import ConfigurationError, UnsupportedOperationError
from feasres_jax.meta import NLSMeta, ProblemMeta
from feasres_jax.nls import AbstractNLSProblem
from feasres_jax.problem import AbstractProblem
from feasres_jax.slack import slack_problem
from feasres_jax.types import OutBuffer, VectorLike
from feasres_jax.utils import gram_lower, snapshot

logger = logging.getLogger(__name__)


class FeasibilityResidual(AbstractNLSProblem):
    """Nonlinear least-squares model of the constraint violation of a problem.

    The model owns the problem it wraps; ``close()`` (or leaving a ``with``
    block) releases it.

    Attributes:
        wrapped: Equality-constrained problem whose constraints define the
            residual. A ``SlackProblem``/``SlackNLSProblem`` when the input
            had inequality constraints.
        meta: Bound-constrained view: ``nvar``, ``x0``, ``lvar`` and ``uvar``
            of the wrapped problem, no general constraints.
        nls_meta: Residual space: ``nequ`` equals the number of constraints
            of the wrapped problem.
        counters: Evaluation counters.

    Example:
        >>> import jax.numpy as jnp
        >>> from feasres_jax import FeasibilityResidual, Problem
        >>>
        >>> def constraint(x, args):
        ...     return jnp.array([x[0] ** 2 + x[1] - 1.0, x[0] - x[1] ** 2])
        >>>
        >>> problem = Problem(
        ...     lambda x, args: jnp.sum(x**2), jnp.ones(2),
        ...     constraint_fn=constraint, n_constraints=2,
        ... )
        >>> with FeasibilityResidual(problem) as nls:
        ...     Fx = nls.residual(nls.meta.x0)
    """

    def __init__(self, problem: AbstractProblem, name: Optional[str] = None):
        if name is None:
            name = f"{problem.meta.name}-feasres"
        if problem.meta.ncon == 0:
            raise ConfigurationError(
                f"Cannot build a feasibility residual for {problem.meta.name!r}: "
                "a feasibility residual requires constraints"
            )
        if not problem.meta.equality_constrained:
            # Slack problems are always equality-constrained
            problem = slack_problem(problem)

        wrapped_meta = problem.meta
        m, n = wrapped_meta.ncon, wrapped_meta.nvar
        meta = ProblemMeta(
            n,
            x0=wrapped_meta.x0,
            lvar=wrapped_meta.lvar,
            uvar=wrapped_meta.uvar,
            nnzj=0,
            name=name,
        )
        nls_meta = NLSMeta(
            m,
            n,
            x0=wrapped_meta.x0,
            nnzj=wrapped_meta.nnzj,
            nnzh=wrapped_meta.nnzh,
            lin=wrapped_meta.lin,
        )
        super().__init__(meta, nls_meta)
        self.wrapped = problem

        # Scratch buffers, overwritten by every call that uses them
        dtype = wrapped_meta.x0.dtype
        self._y = np.zeros(m, dtype=dtype)
        self._Hiv = np.zeros(n, dtype=dtype)
        self._Jvcx = np.zeros(m, dtype=dtype)

        logger.debug(
            "Built feasibility residual %s: nvar=%d, nequ=%d", name, n, m
        )

    def _release(self) -> None:
        logger.debug("Closing %s and its wrapped problem", self.meta.name)
        self.wrapped.close()

    def summary(self) -> str:
        header = (
            "FeasibilityResidual - Nonlinear least-squares defined from "
            "constraints of another problem"
        )
        return header + "\n" + super().summary()

    # Residual

    def _residual(self, x):
        return self.wrapped.cons(x) - jnp.asarray(self.wrapped.meta.lcon)

    # Residual Jacobian

    def _jac_residual(self, x):
        return self.wrapped.jac(x)

    def _jac_structure_residual(self):
        return self.wrapped.jac_structure()

    def _jac_coord_residual(self, x):
        return self.wrapped.jac_coord(x)

    def _jprod_residual(self, x, v):
        return self.wrapped.jprod(x, v)

    def _jtprod_residual(self, x, v):
        return self.wrapped.jtprod(x, v)

    # Residual Hessians

    def _hess_residual(self, x, v):
        return self.wrapped.hess(x, v, obj_weight=0.0)

    def _hess_structure_residual(self):
        return self.wrapped.hess_structure()

    def _hess_coord_residual(self, x, v):
        return self.wrapped.hess_coord(x, v, obj_weight=0.0)

    def _one_hot(self, i: int) -> np.ndarray:
        self._check_residual_index(i)
        self._y[:] = 0
        self._y[i] = 1
        return self._y

    def _jth_hess_residual(self, x, i):
        e = snapshot(self._one_hot(i))
        return self.wrapped.hess(x, e, obj_weight=0.0)

    def _hprod_residual(self, x, i, v):
        e = snapshot(self._one_hot(i))
        return self.wrapped.hprod(x, v, y=e, obj_weight=0.0)

    # Objective Hessian

    def _hess(self, x, y, obj_weight):
        cx = self.wrapped.cons(x)
        Jx = self.wrapped.jac(x)
        Hx = gram_lower(Jx)
        Hx = Hx + self.wrapped.hess(x, cx, obj_weight=0.0)
        return obj_weight * Hx

    def hprod(
        self,
        x: VectorLike,
        v: VectorLike,
        y: Optional[VectorLike] = None,
        out: OutBuffer = None,
        obj_weight: float = 1.0,
    ):
        """Objective Hessian-vector product using the model's own buffers.

        The model has no general constraints, so ``y`` must be ``None`` or
        empty; anything else raises ``ValueError``.
        """
        self._multipliers(y)
        self._count("neval_hprod")
        return self._hprod_into(x, v, self._Jvcx, self._Hiv, out, obj_weight)

    def hprod_with_buffers(
        self,
        x: VectorLike,
        v: VectorLike,
        jv_buffer: np.ndarray,
        hv_buffer: np.ndarray,
        out: OutBuffer = None,
        obj_weight: float = 1.0,
    ):
        """Objective Hessian-vector product using caller-owned scratch buffers.

        Args:
            x: Point of length ``nvar``.
            v: Direction of length ``nvar``.
            jv_buffer: Writable buffer of length ``nequ``.
            hv_buffer: Writable buffer of length ``nvar``.
            out: Optional output buffer of length ``nvar``.
            obj_weight: Scale of the product.

        Both scratch buffers are overwritten.
        """
        self._count("neval_hprod")
        return self._hprod_into(x, v, jv_buffer, hv_buffer, out, obj_weight)

    def _hprod_into(self, x, v, Jvcx, Hiv, out, obj_weight):
        # Hv = obj_weight * (J^T J v + sum_i c_i(x) ∇²c_i(x) v)
        self.wrapped.jprod(x, v, out=Jvcx)
        Hv = self.wrapped.jtprod(x, snapshot(Jvcx), out=out)
        # J v is no longer needed, reuse its buffer for c(x)
        self.wrapped.cons(x, out=Jvcx)
        self.wrapped.hprod(x, v, y=snapshot(Jvcx), out=Hiv, obj_weight=0.0)
        if out is None:
            return obj_weight * (Hv + snapshot(Hiv))
        out += Hiv
        out *= obj_weight
        return out

    # Sparse objective Hessian

    def hess_structure(self):
        raise UnsupportedOperationError(
            "hess_structure is not available for FeasibilityResidual; "
            "use hess_structure_residual instead"
        )

    def hess_coord(self, x, y=None, obj_weight=1.0):
        raise UnsupportedOperationError(
            "hess_coord is not available for FeasibilityResidual; "
            "use hess_coord_residual instead"
        )
