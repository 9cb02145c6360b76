from typing import Callable, Optional, TypeVar

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def write_out(value, out: Optional[np.ndarray]):
    """Copy ``value`` into ``out`` if a buffer was supplied.

    Returns ``out`` when given, otherwise ``value`` unchanged.
    """
    if out is None:
        return value
    np.copyto(out, np.asarray(value))
    return out


def snapshot(buffer: np.ndarray) -> jax.Array:
    """Copy a scratch buffer into a fresh JAX array.

    JAX may alias host memory on CPU, and scratch buffers are rewritten by
    later calls.
    """
    return jnp.array(buffer, copy=True)


def dense_jac_structure(m: int, n: int) -> tuple[np.ndarray, np.ndarray]:
    """Row-major coordinates of a dense ``m x n`` Jacobian."""
    rows = np.repeat(np.arange(m, dtype=np.int64), n)
    cols = np.tile(np.arange(n, dtype=np.int64), m)
    return rows, cols


def dense_hess_structure(n: int) -> tuple[np.ndarray, np.ndarray]:
    """Coordinates of the lower triangle of a dense ``n x n`` Hessian."""
    rows, cols = np.tril_indices(n)
    return rows.astype(np.int64), cols.astype(np.int64)


@jaxtyped(typechecker=beartype)
def gram_lower(jac: Float[Array, "m n"]) -> Float[Array, "n n"]:
    """Lower triangle of ``J^T J``."""
    return jnp.tril(jac.T @ jac)


@jaxtyped(typechecker=beartype)
def symmetrize_lower(lower: Float[Array, "n n"]) -> Float[Array, "n n"]:
    """Rebuild a full symmetric matrix from its lower triangle."""
    return lower + jnp.tril(lower, k=-1).T


@jaxtyped(typechecker=beartype)
def pad_lower(lower: Float[Array, "n n"], size: int) -> Float[Array, "N N"]:
    """Embed an ``n x n`` triangle in the top-left block of a zero ``size x size``."""
    n = lower.shape[0]
    return jnp.zeros((size, size), dtype=lower.dtype).at[:n, :n].set(lower)
