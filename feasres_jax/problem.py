"""Constrained problem abstraction.

A problem is

    min f(x)  s.t.  lcon <= c(x) <= ucon,  lvar <= x <= uvar.

``AbstractProblem`` fixes the public evaluation API. Every public evaluation
increments exactly its own counter and then calls a protected hook
(``_obj``, ``_cons``, ``_hprod``...) that subclasses implement. Structure
queries are evaluation-independent and are not counted.

Hessians follow the Lagrangian convention

    H(x, y; sigma) = sigma * ∇²f(x) + sum_i y_i ∇²c_i(x)

and are returned as their lower triangle.

``Problem`` is a concrete problem built from JAX-traceable callables, with
derivatives supplied by the user or computed by automatic differentiation.
"""

import logging
from typing import Any, Optional

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from feasres_jax.counters import PROBLEM_COUNTERS, Counters
from feasres_jax.errors import ProblemClosedError
from feasres_jax.meta import ProblemMeta
from feasres_jax.types import (
    ConstraintFn,
    GradFn,
    JacobianFn,
    ObjectiveFn,
    OutBuffer,
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

logger = logging.getLogger(__name__)


class AbstractProblem:
    """Base class for problems evaluated through counted public methods.

    Attributes:
        meta: Problem metadata.
        counters: Evaluation counters.
    """

    counter_kinds: tuple[str, ...] = PROBLEM_COUNTERS

    def __init__(self, meta: ProblemMeta):
        self.meta = meta
        self.counters = Counters(type(self).counter_kinds)
        self._closed = False

    # Lifecycle

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the resources held by this problem. Idempotent."""
        if not self._closed:
            self._release()
            self._closed = True

    def _release(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise ProblemClosedError(f"Problem {self.meta.name!r} has been closed")

    def _count(self, kind: str) -> None:
        self._ensure_open()
        self.counters.increment(kind)

    # Objective

    def obj(self, x: VectorLike) -> Float[Array, ""]:
        self._count("neval_obj")
        return self._obj(x)

    def grad(self, x: VectorLike, out: OutBuffer = None):
        self._count("neval_grad")
        return write_out(self._grad(x), out)

    # Constraints

    def cons(self, x: VectorLike, out: OutBuffer = None):
        self._count("neval_cons")
        return write_out(self._cons(x), out)

    def jac(self, x: VectorLike) -> Float[Array, "m n"]:
        self._count("neval_jac")
        return self._jac(x)

    def jac_structure(self) -> Structure:
        self._ensure_open()
        return self._jac_structure()

    def jac_coord(self, x: VectorLike) -> Float[Array, " nnzj"]:
        self._count("neval_jac")
        return self._jac_coord(x)

    def jprod(self, x: VectorLike, v: VectorLike, out: OutBuffer = None):
        self._count("neval_jprod")
        return write_out(self._jprod(x, v), out)

    def jtprod(self, x: VectorLike, v: VectorLike, out: OutBuffer = None):
        self._count("neval_jtprod")
        return write_out(self._jtprod(x, v), out)

    # Lagrangian Hessian

    def hess(
        self,
        x: VectorLike,
        y: Optional[VectorLike] = None,
        obj_weight: float = 1.0,
    ) -> Float[Array, "n n"]:
        y = self._multipliers(y)
        self._count("neval_hess")
        return self._hess(x, y, obj_weight)

    def hess_structure(self) -> Structure:
        self._ensure_open()
        return self._hess_structure()

    def hess_coord(
        self,
        x: VectorLike,
        y: Optional[VectorLike] = None,
        obj_weight: float = 1.0,
    ) -> Float[Array, " nnzh"]:
        y = self._multipliers(y)
        self._count("neval_hess")
        return self._hess_coord(x, y, obj_weight)

    def hprod(
        self,
        x: VectorLike,
        v: VectorLike,
        y: Optional[VectorLike] = None,
        out: OutBuffer = None,
        obj_weight: float = 1.0,
    ):
        y = self._multipliers(y)
        self._count("neval_hprod")
        return write_out(self._hprod(x, v, y, obj_weight), out)

    def _multipliers(self, y: Optional[VectorLike]) -> Array:
        if y is None:
            return jnp.zeros((self.meta.ncon,), dtype=self.meta.x0.dtype)
        y = jnp.asarray(y)
        if y.shape != (self.meta.ncon,):
            raise ValueError(
                f"Expected {self.meta.ncon} multipliers for {self.meta.name!r}, "
                f"got shape {y.shape}"
            )
        return y

    # Hooks

    def _obj(self, x):
        raise NotImplementedError(f"{type(self).__name__} does not implement obj")

    def _grad(self, x):
        raise NotImplementedError(f"{type(self).__name__} does not implement grad")

    def _cons(self, x):
        raise NotImplementedError(f"{type(self).__name__} does not implement cons")

    def _jac(self, x):
        raise NotImplementedError(f"{type(self).__name__} does not implement jac")

    def _jac_structure(self) -> Structure:
        return dense_jac_structure(self.meta.ncon, self.meta.nvar)

    def _jac_coord(self, x):
        return jnp.ravel(self._jac(x))

    def _jprod(self, x, v):
        return self._jac(x) @ jnp.asarray(v)

    def _jtprod(self, x, v):
        return self._jac(x).T @ jnp.asarray(v)

    def _hess(self, x, y, obj_weight):
        raise NotImplementedError(f"{type(self).__name__} does not implement hess")

    def _hess_structure(self) -> Structure:
        return dense_hess_structure(self.meta.nvar)

    def _hess_coord(self, x, y, obj_weight):
        rows, cols = self._hess_structure()
        return self._hess(x, y, obj_weight)[rows, cols]

    def _hprod(self, x, v, y, obj_weight):
        full = symmetrize_lower(self._hess(x, y, obj_weight))
        return full @ jnp.asarray(v)

    # Display

    def summary(self) -> str:
        """Short human-readable description of the problem and its counters."""
        meta = self.meta
        lines = [
            f"{type(self).__name__}: {meta.name}",
            f"  nvar = {meta.nvar}, ncon = {meta.ncon}"
            f" ({len(meta.jfix)} equalities, {meta.nlin} linear)",
            f"  nnzj = {meta.nnzj}, nnzh = {meta.nnzh}",
        ]
        nonzero = {k: v for k, v in self.counters.snapshot().items() if v}
        if nonzero:
            lines.append(
                "  evaluations: " + ", ".join(f"{k}={v}" for k, v in nonzero.items())
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.meta.name!r}, "
            f"nvar={self.meta.nvar}, ncon={self.meta.ncon})"
        )


class Problem(AbstractProblem):
    """Constrained problem defined by JAX-traceable callables.

    Derivatives that are not supplied are computed by automatic
    differentiation: the gradient with ``jax.grad``, the Jacobian with
    ``jax.jacrev``, Jacobian products with ``jax.jvp``/``jax.vjp`` and
    Hessian-vector products by forward-over-reverse on the Lagrangian.

    Args:
        objective_fn: Objective ``f(x, args) -> scalar``.
        x0: Initial point; fixes ``nvar`` and the floating-point dtype.
        constraint_fn: Optional constraints ``c(x, args) -> (m,)``.
        n_constraints: Number of constraints ``m``.
        lvar, uvar: Variable bounds (default unbounded).
        lcon, ucon: Constraint bounds (default ``c(x) = 0``).
        y0: Initial multipliers.
        lin: Indices of the linear constraints.
        args: Extra argument forwarded to every callable.
        obj_grad_fn: Optional gradient ``grad_fn(x, args)``.
        jac_fn: Optional constraint Jacobian ``jac_fn(x, args)``.
        name: Problem name.

    Example:
        >>> import jax.numpy as jnp
        >>> from feasres_jax import Problem
        >>>
        >>> def objective(x, args):
        ...     return jnp.sum(x**2)
        >>>
        >>> def constraint(x, args):
        ...     return jnp.array([x[0] + x[1]])
        >>>
        >>> problem = Problem(
        ...     objective, jnp.zeros(2), constraint_fn=constraint,
        ...     n_constraints=1, lcon=[1.0], ucon=[1.0],
        ... )
    """

    def __init__(
        self,
        objective_fn: ObjectiveFn,
        x0: VectorLike,
        *,
        constraint_fn: Optional[ConstraintFn] = None,
        n_constraints: int = 0,
        lvar: Optional[VectorLike] = None,
        uvar: Optional[VectorLike] = None,
        lcon: Optional[VectorLike] = None,
        ucon: Optional[VectorLike] = None,
        y0: Optional[VectorLike] = None,
        lin: tuple[int, ...] = (),
        args: Any = None,
        obj_grad_fn: Optional[GradFn] = None,
        jac_fn: Optional[JacobianFn] = None,
        name: str = "generic",
    ):
        if constraint_fn is None and n_constraints > 0:
            raise ValueError("n_constraints > 0 requires a constraint_fn")
        x0 = np.asarray(x0)
        meta = ProblemMeta(
            x0.shape[0],
            x0=x0,
            lvar=lvar,
            uvar=uvar,
            ncon=n_constraints,
            y0=y0,
            lcon=lcon,
            ucon=ucon,
            lin=lin,
            name=name,
        )
        super().__init__(meta)
        self._compile(objective_fn, constraint_fn, args, obj_grad_fn, jac_fn)

    def _compile(self, objective_fn, constraint_fn, args, obj_grad_fn, jac_fn):
        f = args_closure(objective_fn, args)
        m = self.meta.ncon

        if constraint_fn is not None:
            c = args_closure(constraint_fn, args)
        else:

            def c(x):
                return jnp.zeros((m,), dtype=x.dtype)

        def lagrangian(x, y, sigma):
            return sigma * f(x) + jnp.dot(y, c(x))

        def lagrangian_hvp(x, y, v, sigma):
            # Forward-over-reverse: directional derivative of ∇L along v
            _, hv = jax.jvp(lambda z: jax.grad(lagrangian)(z, y, sigma), (x,), (v,))
            return hv

        self._f = jax.jit(f)
        if obj_grad_fn is not None:
            self._g = jax.jit(args_closure(obj_grad_fn, args))
        else:
            self._g = jax.jit(jax.grad(f))
        self._c = jax.jit(c)

        if jac_fn is not None:
            J = args_closure(jac_fn, args)
            self._J = jax.jit(J)
            self._Jv = jax.jit(lambda x, v: J(x) @ v)
            self._Jtv = jax.jit(lambda x, u: J(x).T @ u)
        else:
            self._J = jax.jit(jax.jacrev(c))
            self._Jv = jax.jit(lambda x, v: jax.jvp(c, (x,), (v,))[1])
            self._Jtv = jax.jit(lambda x, u: jax.vjp(c, x)[1](u)[0])

        self._H = jax.jit(
            lambda x, y, sigma: jnp.tril(jax.hessian(lagrangian)(x, y, sigma))
        )
        self._Hv = jax.jit(lagrangian_hvp)

    def _release(self) -> None:
        logger.debug("Releasing compiled functions of %s", self.meta.name)
        self._f = self._g = self._c = None
        self._J = self._Jv = self._Jtv = None
        self._H = self._Hv = None

    def _point(self, x):
        return jnp.asarray(x, dtype=self.meta.x0.dtype)

    def _sigma(self, obj_weight):
        return jnp.asarray(obj_weight, dtype=self.meta.x0.dtype)

    def _obj(self, x):
        return self._f(self._point(x))

    def _grad(self, x):
        return self._g(self._point(x))

    def _cons(self, x):
        return self._c(self._point(x))

    def _jac(self, x):
        return self._J(self._point(x))

    def _jprod(self, x, v):
        return self._Jv(self._point(x), self._point(v))

    def _jtprod(self, x, v):
        return self._Jtv(self._point(x), self._point(v))

    def _hess(self, x, y, obj_weight):
        return self._H(self._point(x), self._point(y), self._sigma(obj_weight))

    def _hprod(self, x, v, y, obj_weight):
        return self._Hv(
            self._point(x), self._point(y), self._point(v), self._sigma(obj_weight)
        )
