"""Jacobian computation for the regression controller.

All Jacobians in this package are stored parameter-major: one row per
parameter and one column per data point, i.e. the transpose of the
conventional (m, n) layout.
"""
import numpy as np
import jax
jax.config.update("jax_enable_x64", True)
import jax.numpy as jnp
from jax import jit, jacfwd
from typing import Any, Callable, Dict, Optional, Sequence

from gnfit.common_jax import matrix
from gnfit._optimize import UndefinedResidualError

__all__ = ['JacobianProvider', 'AutoDiffJacobian']


class JacobianProvider():
    """Computes the Jacobian of a residual function, either through the
    model's analytic Jacobian or by central finite differences.

    Parameters
    ----------
    fun : Callable
        Residual function ``fun(params) -> ndarray`` of shape (m,).
    jac : Callable, optional
        Analytic Jacobian ``jac(params) -> ndarray`` of shape (n, m). When
        given it is used exclusively and ``fun`` is never called for
        derivatives.
    fdrel : float, optional
        Relative step of the finite-difference approximation, by default
        1e-4.
    fdabs : float, optional
        Absolute step used for parameters that are exactly zero, where the
        relative step vanishes. Defaults to `fdrel`.
    """

    def __init__(self,
                 fun: Callable,
                 jac: Optional[Callable] = None,
                 fdrel: float = 1e-4,
                 fdabs: Optional[float] = None):
        self.fun = fun
        self.jac = jac
        self.fdrel = fdrel
        self.fdabs = fdrel if fdabs is None else fdabs


    @property
    def analytic(self) -> bool:
        return self.jac is not None


    def jacobian(self, params: np.ndarray, m: Optional[int] = None
                 ) -> np.ndarray:
        """Return the parameter-major Jacobian at `params`.

        Parameters
        ----------
        params : np.ndarray
            Parameters, shape (n,).
        m : int, optional
            Expected number of data points. Used to check the shape of an
            analytic Jacobian.

        Returns
        -------
        np.ndarray
            Jacobian of shape (n, m).

        Raises
        ------
        UndefinedResidualError
            If the analytic Jacobian has non-finite entries.
        """
        if self.jac is None:
            return self.finite_difference(params)

        Jt = matrix(self.jac(params))
        n = params.size
        if Jt.shape[0] != n or (m is not None and Jt.shape[1] != m):
            raise ValueError(
                "The return value of `jac` has wrong shape: expected {0}, "
                "actual {1}.".format((n, m if m is not None else Jt.shape[1]),
                                     Jt.shape))
        if not np.all(np.isfinite(Jt)):
            raise UndefinedResidualError(
                "Analytic Jacobian is not finite at {0}.".format(params),
                params)
        return Jt


    def finite_difference(self, params: np.ndarray) -> np.ndarray:
        """Central-difference approximation of the Jacobian.

        Each parameter is perturbed on its own by ``dp = params[k] * fdrel``
        in both directions, which costs ``2 * n`` residual evaluations.
        """
        params = np.asarray(params, dtype=float)
        rows = []
        for k in range(params.size):
            dp = params[k] * self.fdrel
            if dp == 0:
                dp = self.fdabs
            params_lo = params.copy()
            params_hi = params.copy()
            params_lo[k] -= dp
            params_hi[k] += dp
            r_lo = self.fun(params_lo)
            r_hi = self.fun(params_hi)
            rows.append((r_hi - r_lo) / (2 * dp))
        return np.vstack(rows)


class AutoDiffJacobian():
    """Wraps a JAX traceable residual function such that jacfwd is performed
    on it, thereby giving the autodiff Jacobian in the parameter-major layout
    used by the regression code.
    """

    def create_ad_jacobian(self,
                           func: Callable,
                           args: Sequence[Any] = (),
                           kwargs: Optional[Dict[str, Any]] = None
                           ) -> Callable:
        """Creates a function that returns the autodiff Jacobian of the
        residual function.

        Parameters
        ----------
        func : Callable
            Residual function ``func(params, *args, **kwargs)``. It must be
            written with ``jax.numpy`` so that it can be traced.
        args : Sequence, optional
            Extra positional arguments held fixed during differentiation.
        kwargs : dict, optional
            Extra keyword arguments held fixed during differentiation.

        Returns
        -------
        Callable
            ``jac(params) -> np.ndarray`` of shape (n, m).
        """
        kwargs = {} if kwargs is None else kwargs

        @jit
        def wrap_func(params: jnp.ndarray) -> jnp.ndarray:
            """Residuals as a function of the parameters only, which is the
            form jacfwd differentiates."""
            return jnp.atleast_1d(func(params, *args, **kwargs))

        @jit
        def jac_func(params: jnp.ndarray) -> jnp.ndarray:
            # jacfwd gives (m, n), we store one row per parameter
            J = jacfwd(wrap_func)(params)
            return jnp.atleast_2d(J.T)

        def param_major_jac(params: np.ndarray) -> np.ndarray:
            return np.asarray(jac_func(jnp.asarray(params, dtype=float)))

        self.jac = param_major_jac
        return self.jac
