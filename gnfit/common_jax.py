"""
Dense matrix helpers used by the regression code. The heavy products are
compiled with JAX and collected on the CommonJIT class, the inverse is
left to NumPy so that a singular matrix fails loudly instead of silently
filling the result with infs.
"""
import numpy as np
import jax
jax.config.update("jax_enable_x64", True)
import jax.numpy as jnp
from jax import jit
from typing import Sequence, Union

from gnfit._optimize import SingularJacobianError

EPS = np.finfo(float).eps

__all__ = ['EPS', 'CommonJIT', 'column_vector', 'matrix', 'inverse']


def column_vector(values: Union[Sequence[float], np.ndarray]) -> np.ndarray:
    """Convert a sequence of reals into a 1-D float64 array.

    Parameters
    ----------
    values : Sequence[float] or np.ndarray
        The vector entries.

    Returns
    -------
    np.ndarray
        A fresh copy of the entries, shape (n,).
    """
    vec = np.array(values, dtype=float)
    if vec.ndim == 0:
        vec = vec.reshape(1)
    if vec.ndim != 1:
        raise ValueError("Expected a 1-D sequence, got shape {0}."
                         .format(vec.shape))
    return vec


def matrix(rows: Union[Sequence[Sequence[float]], np.ndarray]) -> np.ndarray:
    """Convert a sequence of rows into a 2-D float64 array."""
    mat = np.array(rows, dtype=float)
    mat = np.atleast_2d(mat)
    if mat.ndim != 2:
        raise ValueError("Expected a sequence of rows, got shape {0}."
                         .format(mat.shape))
    return mat


def inverse(G: Union[np.ndarray, jnp.ndarray]) -> np.ndarray:
    """Invert a square matrix.

    Parameters
    ----------
    G : np.ndarray or jnp.ndarray
        Square matrix, in practice the Gram matrix of the Jacobian.

    Returns
    -------
    np.ndarray
        The inverse of `G`.

    Raises
    ------
    SingularJacobianError
        If `G` is singular or the inverse is not finite.
    """
    G = np.asarray(G, dtype=float)
    try:
        G_inv = np.linalg.inv(G)
    except np.linalg.LinAlgError as e:
        raise SingularJacobianError(
            "Gram matrix of the Jacobian is singular: {0}".format(e)) from e
    if not np.all(np.isfinite(G_inv)):
        raise SingularJacobianError(
            "Gram matrix of the Jacobian could not be inverted to finite "
            "values.")
    return G_inv


class CommonJIT():

    def __init__(self):
        """Initialize the class and create the JAX/JIT functions that will be
        compiled"""
        self.create_gram()
        self.create_pinv_step()
        self.create_norms()


    def create_gram(self):
        """Create the function forming the Gram matrix of a parameter-major
        Jacobian."""

        @jit
        def gram(Jt: jnp.ndarray) -> jnp.ndarray:
            """Compute ``Jt @ Jt.T``.

            Parameters
            ----------
            Jt : jnp.ndarray
                Jacobian stored with one row per parameter, shape (n, m).

            Returns
            -------
            jnp.ndarray
                The (n, n) Gram matrix, equal to ``J.T @ J`` for the
                conventional (m, n) Jacobian.
            """
            return Jt @ Jt.T
        self.gram = gram


    def create_pinv_step(self):
        """Create the functions applying the pseudo-inverse to the residual
        vector."""

        @jit
        def pseudo_inverse(G_inv: jnp.ndarray, Jt: jnp.ndarray) -> jnp.ndarray:
            """Pseudo-inverse ``(J.T J)^-1 J.T`` from the inverted Gram matrix
            and the parameter-major Jacobian."""
            return G_inv @ Jt

        @jit
        def pinv_step(beta: jnp.ndarray,
                      G_inv: jnp.ndarray,
                      Jt: jnp.ndarray,
                      r: jnp.ndarray
                      ) -> jnp.ndarray:
            """Apply one linearized least-squares update.

            Parameters
            ----------
            beta : jnp.ndarray
                Current parameters, shape (n,).
            G_inv : jnp.ndarray
                Inverse of the Gram matrix, shape (n, n).
            Jt : jnp.ndarray
                Parameter-major Jacobian, shape (n, m).
            r : jnp.ndarray
                Residuals at `beta`, shape (m,).

            Returns
            -------
            jnp.ndarray
                Updated parameters ``beta - G_inv @ Jt @ r``.
            """
            return beta - pseudo_inverse(G_inv, Jt) @ r

        self.pseudo_inverse = pseudo_inverse
        self.pinv_step = pinv_step


    def create_norms(self):

        @jit
        def relative_change(new: jnp.ndarray, old: jnp.ndarray):
            delta = jnp.linalg.norm(new - old)
            mag = jnp.linalg.norm(new)
            return delta, mag

        self.relative_change = relative_change


# compiled functions are cached per CommonJIT instance, so all controllers
# and strategies share this one
cJIT = CommonJIT()
