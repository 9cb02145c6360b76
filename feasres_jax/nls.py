"""Nonlinear least-squares problem abstraction.

A nonlinear least-squares (NLS) problem minimizes

    f(x) = 1/2 ||F(x)||^2

where ``F`` is the residual function. Besides the objective API inherited
from ``AbstractProblem``, NLS problems expose the residual and its
derivatives explicitly, each with its own evaluation counter.

Residual Hessians follow the same convention as Lagrangian Hessians: for a
weight vector ``v`` of length ``nequ``, ``hess_residual(x, v)`` is the lower
triangle of ``sum_i v_i ∇²F_i(x)``.
"""

from typing import Any, Optional

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from feasres_jax.counters import NLS_COUNTERS, PROBLEM_COUNTERS
from feasres_jax.meta import NLSMeta, ProblemMeta
from feasres_jax.problem import AbstractProblem, Problem
from feasres_jax.types import (
    ConstraintFn,
    JacobianFn,
    OutBuffer,
    ResidualFn,
    Structure,
    VectorLike,
)
from feasres_jax.utils import (
    args_closure,
    dense_hess_structure,
    dense_jac_structure,
    symmetrize_lower,
    write_out,
)


class AbstractNLSProblem(AbstractProblem):
    """Base class for nonlinear least-squares problems.

    Attributes:
        meta: Problem metadata of the objective view.
        nls_meta: Metadata of the residual space.
        counters: Evaluation counters, including the residual kinds.
    """

    counter_kinds = PROBLEM_COUNTERS + NLS_COUNTERS

    def __init__(self, meta: ProblemMeta, nls_meta: NLSMeta):
        super().__init__(meta)
        self.nls_meta = nls_meta

    # Residual

    def residual(self, x: VectorLike, out: OutBuffer = None):
        self._count("neval_residual")
        return write_out(self._residual(x), out)

    def jac_residual(self, x: VectorLike) -> Float[Array, "nequ n"]:
        self._count("neval_jac_residual")
        return self._jac_residual(x)

    def jac_structure_residual(self) -> Structure:
        self._ensure_open()
        return self._jac_structure_residual()

    def jac_coord_residual(self, x: VectorLike) -> Float[Array, " nnzj"]:
        self._count("neval_jac_residual")
        return self._jac_coord_residual(x)

    def jprod_residual(self, x: VectorLike, v: VectorLike, out: OutBuffer = None):
        self._count("neval_jprod_residual")
        return write_out(self._jprod_residual(x, v), out)

    def jtprod_residual(self, x: VectorLike, v: VectorLike, out: OutBuffer = None):
        self._count("neval_jtprod_residual")
        return write_out(self._jtprod_residual(x, v), out)

    # Residual Hessians

    def hess_residual(self, x: VectorLike, v: VectorLike) -> Float[Array, "n n"]:
        self._count("neval_hess_residual")
        return self._hess_residual(x, v)

    def hess_structure_residual(self) -> Structure:
        self._ensure_open()
        return self._hess_structure_residual()

    def hess_coord_residual(
        self, x: VectorLike, v: VectorLike
    ) -> Float[Array, " nnzh"]:
        self._count("neval_hess_residual")
        return self._hess_coord_residual(x, v)

    def jth_hess_residual(self, x: VectorLike, i: int) -> Float[Array, "n n"]:
        self._count("neval_jhess_residual")
        return self._jth_hess_residual(x, i)

    def hprod_residual(
        self, x: VectorLike, i: int, v: VectorLike, out: OutBuffer = None
    ):
        self._count("neval_hprod_residual")
        return write_out(self._hprod_residual(x, i, v), out)

    # Objective from the residual

    def _obj(self, x):
        Fx = self._residual(x)
        return 0.5 * jnp.dot(Fx, Fx)

    def _grad(self, x):
        return self._jtprod_residual(x, self._residual(x))

    # Hooks

    def _residual(self, x):
        raise NotImplementedError(
            f"{type(self).__name__} does not implement residual"
        )

    def _jac_residual(self, x):
        raise NotImplementedError(
            f"{type(self).__name__} does not implement jac_residual"
        )

    def _jac_structure_residual(self) -> Structure:
        return dense_jac_structure(self.nls_meta.nequ, self.nls_meta.nvar)

    def _jac_coord_residual(self, x):
        return jnp.ravel(self._jac_residual(x))

    def _jprod_residual(self, x, v):
        return self._jac_residual(x) @ jnp.asarray(v)

    def _jtprod_residual(self, x, v):
        return self._jac_residual(x).T @ jnp.asarray(v)

    def _hess_residual(self, x, v):
        raise NotImplementedError(
            f"{type(self).__name__} does not implement hess_residual"
        )

    def _hess_structure_residual(self) -> Structure:
        return dense_hess_structure(self.nls_meta.nvar)

    def _hess_coord_residual(self, x, v):
        rows, cols = self._hess_structure_residual()
        return self._hess_residual(x, v)[rows, cols]

    def _check_residual_index(self, i: int) -> None:
        if not 0 <= i < self.nls_meta.nequ:
            raise IndexError(
                f"residual index {i} out of range for {self.nls_meta.nequ} residuals"
            )

    def _jth_hess_residual(self, x, i):
        self._check_residual_index(i)
        e = np.zeros(self.nls_meta.nequ, dtype=self.meta.x0.dtype)
        e[i] = 1
        return self._hess_residual(x, jnp.asarray(e))

    def _hprod_residual(self, x, i, v):
        return symmetrize_lower(self._jth_hess_residual(x, i)) @ jnp.asarray(v)


class NLSProblem(AbstractNLSProblem):
    """Nonlinear least-squares problem defined by JAX-traceable callables.

    The objective ``1/2 ||F(x)||^2`` and the optional constraints are handled
    by an internal ``Problem``, so objective Hessians are exact. Residual
    derivatives use ``jax.jacrev`` (or a user-supplied Jacobian),
    ``jax.jvp``/``jax.vjp`` and forward-over-reverse products.

    Args:
        residual_fn: Residual ``F(x, args) -> (nequ,)``.
        x0: Initial point.
        n_residuals: Number of residuals ``nequ``.
        constraint_fn: Optional constraints ``c(x, args)``.
        n_constraints: Number of constraints.
        lvar, uvar: Variable bounds.
        lcon, ucon: Constraint bounds.
        y0: Initial multipliers.
        lin: Indices of the linear constraints.
        lin_residuals: Indices of the linear residuals.
        args: Extra argument forwarded to every callable.
        jac_residual_fn: Optional residual Jacobian ``J(x, args)``.
        jac_fn: Optional constraint Jacobian.
        name: Problem name.
    """

    def __init__(
        self,
        residual_fn: ResidualFn,
        x0: VectorLike,
        n_residuals: int,
        *,
        constraint_fn: Optional[ConstraintFn] = None,
        n_constraints: int = 0,
        lvar: Optional[VectorLike] = None,
        uvar: Optional[VectorLike] = None,
        lcon: Optional[VectorLike] = None,
        ucon: Optional[VectorLike] = None,
        y0: Optional[VectorLike] = None,
        lin: tuple[int, ...] = (),
        lin_residuals: tuple[int, ...] = (),
        args: Any = None,
        jac_residual_fn: Optional[JacobianFn] = None,
        jac_fn: Optional[JacobianFn] = None,
        name: str = "generic-nls",
    ):
        def objective(x, args):
            Fx = residual_fn(x, args)
            return 0.5 * jnp.dot(Fx, Fx)

        obj_grad_fn = None
        if jac_residual_fn is not None:

            def obj_grad_fn(x, args):
                return jac_residual_fn(x, args).T @ residual_fn(x, args)

        self._nlp = Problem(
            objective,
            x0,
            constraint_fn=constraint_fn,
            n_constraints=n_constraints,
            lvar=lvar,
            uvar=uvar,
            lcon=lcon,
            ucon=ucon,
            y0=y0,
            lin=lin,
            args=args,
            obj_grad_fn=obj_grad_fn,
            jac_fn=jac_fn,
            name=name,
        )
        meta = self._nlp.meta
        nls_meta = NLSMeta(n_residuals, meta.nvar, x0=meta.x0, lin=lin_residuals)
        super().__init__(meta, nls_meta)
        self._compile(residual_fn, args, jac_residual_fn)

    def _compile(self, residual_fn, args, jac_residual_fn):
        F = args_closure(residual_fn, args)

        def weighted(x, v):
            return jnp.dot(v, F(x))

        def row_hvp(x, i, v):
            _, hv = jax.jvp(lambda z: jax.grad(lambda w: F(w)[i])(z), (x,), (v,))
            return hv

        self._F = jax.jit(F)
        if jac_residual_fn is not None:
            J = args_closure(jac_residual_fn, args)
            self._JF = jax.jit(J)
            self._JFv = jax.jit(lambda x, v: J(x) @ v)
            self._JFtv = jax.jit(lambda x, u: J(x).T @ u)
        else:
            self._JF = jax.jit(jax.jacrev(F))
            self._JFv = jax.jit(lambda x, v: jax.jvp(F, (x,), (v,))[1])
            self._JFtv = jax.jit(lambda x, u: jax.vjp(F, x)[1](u)[0])
        self._HF = jax.jit(lambda x, v: jnp.tril(jax.hessian(weighted)(x, v)))
        self._HFiv = jax.jit(row_hvp)

    def _release(self) -> None:
        self._nlp.close()
        self._F = self._JF = self._JFv = self._JFtv = None
        self._HF = self._HFiv = None

    def _point(self, x):
        return jnp.asarray(x, dtype=self.meta.x0.dtype)

    # Objective and constraints

    def _obj(self, x):
        return self._nlp._obj(x)

    def _grad(self, x):
        return self._nlp._grad(x)

    def _cons(self, x):
        return self._nlp._cons(x)

    def _jac(self, x):
        return self._nlp._jac(x)

    def _jprod(self, x, v):
        return self._nlp._jprod(x, v)

    def _jtprod(self, x, v):
        return self._nlp._jtprod(x, v)

    def _hess(self, x, y, obj_weight):
        return self._nlp._hess(x, y, obj_weight)

    def _hprod(self, x, v, y, obj_weight):
        return self._nlp._hprod(x, v, y, obj_weight)

    # Residual

    def _residual(self, x):
        return self._F(self._point(x))

    def _jac_residual(self, x):
        return self._JF(self._point(x))

    def _jprod_residual(self, x, v):
        return self._JFv(self._point(x), self._point(v))

    def _jtprod_residual(self, x, v):
        return self._JFtv(self._point(x), self._point(v))

    def _hess_residual(self, x, v):
        return self._HF(self._point(x), self._point(v))

    def _hprod_residual(self, x, i, v):
        # jit clamps out-of-range indices instead of failing
        self._check_residual_index(i)
        return self._HFiv(self._point(x), i, self._point(v))
