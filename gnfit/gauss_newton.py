"""Iteration strategies for the regression controller.

A strategy turns the current parameter vector into the next one, using the
residual and Jacobian services of the controller that drives it. The
controller owns the loop and the termination test; the strategy only
performs one step.

The Gauss-Newton step linearizes the residuals around the current
parameters ``beta``
::
    r(beta + d) ~ r(beta) + J d

and picks the ``d`` minimizing the norm of the linearized residuals, the
solution of the normal equations
::
    (J^T J) d = -J^T r

The Jacobian is stored parameter-major (``Jt = J^T``), so the Gram matrix is
``Jt Jt^T`` and the pseudo-inverse is ``(Jt Jt^T)^-1 Jt`` without any
transposition back to the conventional layout. No damping or line search is
applied, the step is taken as is.
"""
import numpy as np
import jax
jax.config.update("jax_enable_x64", True)
import jax.numpy as jnp
from typing import Any

from gnfit.common_jax import cJIT, inverse

__all__ = ['RegressionIterator', 'GaussNewton']


class RegressionIterator():
    """Base iteration strategy. Subclasses implement `refine`."""

    name = 'base'

    def refine(self, params: np.ndarray, fitter: Any) -> np.ndarray:
        """Perform one iteration.

        Parameters
        ----------
        params : np.ndarray
            Current parameters. The array is a copy owned by the strategy
            for the duration of the call.
        fitter : Regression
            The controller providing ``fitter.residuals(params)`` and
            ``fitter.jacobian(params)``.

        Returns
        -------
        np.ndarray
            The next parameter vector.
        """
        raise NotImplementedError(
            "{0} does not define a regression step, subclass "
            "RegressionIterator and override `refine`."
            .format(type(self).__name__))


class GaussNewton(RegressionIterator):

    name = 'gauss-newton'

    def __init__(self):
        """Initialize the Gauss-Newton strategy and its JIT functions."""
        super().__init__()
        self.cJIT = cJIT


    def refine(self, params: np.ndarray, fitter: Any) -> np.ndarray:
        """Take one Gauss-Newton step from `params`.

        Raises
        ------
        SingularJacobianError
            If the Gram matrix of the Jacobian can not be inverted.
        UndefinedResidualError
            If the model can not be evaluated at `params` or at one of the
            finite-difference points.
        """
        r = fitter.residuals(params)
        Jt = fitter.jacobian(params)

        Jt_jnp = jnp.asarray(Jt)
        G = self.cJIT.gram(Jt_jnp)
        G_inv = inverse(G)
        beta_new = self.cJIT.pinv_step(jnp.asarray(params),
                                       jnp.asarray(G_inv),
                                       Jt_jnp,
                                       jnp.asarray(r))
        return np.array(beta_new, dtype=float)
