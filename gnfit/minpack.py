import warnings
import numpy as np
from numpy import inf, zeros
from inspect import signature
from typing import Any, Callable, Optional, Tuple, Union

import jax
jax.config.update("jax_enable_x64", True)
import jax.numpy as jnp
from jax import jit
from jax.scipy.linalg import svd as jax_svd

from gnfit.fittable import Fittable
from gnfit.gauss_newton import RegressionIterator
from gnfit.jacobian import AutoDiffJacobian
from gnfit.regression import Regression
from gnfit._optimize import OptimizeWarning

__all__ = ['CurveModel', 'CurveFit', 'curve_fit']


def curve_fit(f, *args, **kwargs):
    gcf = CurveFit()
    popt, pcov = gcf.curve_fit(f, *args, **kwargs)
    return popt, pcov


class CurveModel(Fittable):
    """Fittable wrapping a model function and the data it is fit to.

    The residuals are ``(f(xdata, *params) - ydata) / sigma``.

    Parameters
    ----------
    f : callable
        The model function, ``f(x, ...)``, taking the independent variable
        first and the parameters as separate remaining arguments.
    xdata : np.ndarray
        The independent variable, shape (m,) or (k, m).
    ydata : np.ndarray
        The dependent data, shape (m,).
    p0 : np.ndarray
        Starting parameters.
    jac : {None, callable, 'autodiff'}, optional
        None uses finite differences. A callable ``jac(x, ...)`` must return
        the derivatives of `f` with one row per parameter. 'autodiff' uses
        JAX's jacfwd on `f`, which must then be written with ``jax.numpy``.
    sigma : np.ndarray, optional
        Standard deviations of `ydata`, shape (m,).
    """

    def __init__(self,
                 f: Callable,
                 xdata: np.ndarray,
                 ydata: np.ndarray,
                 p0: np.ndarray,
                 jac: Union[None, str, Callable] = None,
                 sigma: Optional[np.ndarray] = None):
        if jac not in [None, 'autodiff'] and not callable(jac):
            raise ValueError("`jac` must be None, 'autodiff' or callable.")

        self.f = f
        self.xdata = xdata
        self.ydata = ydata
        self.p0 = np.atleast_1d(np.asarray(p0, dtype=float))
        if sigma is None:
            self.transform = np.ones(ydata.size)
        else:
            self.transform = 1.0 / sigma

        if jac == 'autodiff':
            xdata_jnp = jnp.asarray(xdata)
            ydata_jnp = jnp.asarray(ydata)
            transform_jnp = jnp.asarray(self.transform)

            def jax_residuals(params):
                return (f(xdata_jnp, *params) - ydata_jnp) * transform_jnp

            adj = AutoDiffJacobian()
            self.analytic_jacobian = adj.create_ad_jacobian(jax_residuals)
        elif jac is not None:
            def scaled_jac(params):
                Jt = np.atleast_2d(np.asarray(jac(self.xdata, *params),
                                              dtype=float))
                return Jt * self.transform[np.newaxis, :]
            self.analytic_jacobian = scaled_jac

    @property
    def param_count(self) -> int:
        return self.p0.size

    @property
    def point_count(self) -> int:
        return self.ydata.size

    @property
    def initial_params(self) -> np.ndarray:
        return self.p0.copy()

    def residuals(self, params: np.ndarray) -> np.ndarray:
        f_eval = np.asarray(self.f(self.xdata, *params), dtype=float)
        return (f_eval - self.ydata) * self.transform


@jit
def covariance_svd(jac):
    """JIT-compiled SVD used for the covariance, compiled once per shape."""
    _, s, VT = jax_svd(jac, full_matrices=False)
    return s, VT


class CurveFit():

    def __init__(self):
        """CurveFit class for fitting model functions to data with the
        Gauss-Newton regression."""
        self.covariance_svd = covariance_svd
        self.regression = None


    def curve_fit(self,
                  f: Callable,
                  xdata: np.ndarray,
                  ydata: np.ndarray,
                  p0: Optional[np.ndarray] = None,
                  sigma: Optional[np.ndarray] = None,
                  absolute_sigma: bool = False,
                  check_finite: bool = True,
                  jac: Union[None, str, Callable] = None,
                  iterator: Optional[RegressionIterator] = None,
                  **kwargs: Any
                  ) -> Tuple[np.ndarray, np.ndarray]:
        """
    Use non-linear least squares to fit a function, f, to data.
    Assumes ``ydata = f(xdata, *params) + eps``.

    Parameters
    ----------
    f : callable
        The model function, f(x, ...). It must take the independent
        variable as the first argument and the parameters to fit as
        separate remaining arguments.
    xdata : array_like
        The independent variable where the data is measured.
        Should usually be an M-length sequence or an (k,M)-shaped array for
        functions with k predictors.
    ydata : array_like
        The dependent data, a length M array - nominally ``f(xdata, ...)``.
    p0 : array_like, optional
        Initial guess for the parameters (length N). If None, then the
        initial values will all be 1 (if the number of parameters for the
        function can be determined using introspection, otherwise a
        ValueError is raised).
    sigma : None or M-length sequence, optional
        Standard deviations of errors in `ydata`. The optimized function is
        ``chisq = sum((r / sigma) ** 2)``. None (default) is equivalent of
        1-D `sigma` filled with ones.
    absolute_sigma : bool, optional
        If True, `sigma` is used in an absolute sense and the estimated
        parameter covariance `pcov` reflects these absolute values.
        If False (default), only the relative magnitudes of the `sigma`
        values matter and `pcov` is scaled by the reduced chi-square.
    check_finite : bool, optional
        If True, check that the input arrays do not contain nans of infs,
        and raise a ValueError if they do. Default is True.
    jac : callable, 'autodiff' or None, optional
        Function with signature ``jac(x, ...)`` which computes the
        derivatives of the model function with respect to the parameters,
        one row per parameter. It will be scaled according to provided
        `sigma`. 'autodiff' uses JAX's automatic differentiation. If None
        (default), central finite differences are used.
    iterator : RegressionIterator, optional
        Iteration strategy, Gauss-Newton by default.
    kwargs
        Options passed to `Regression` (`reltol`, `maxiters`, `fdrel`,
        `fdabs`, `verbose`, `strict`).

    Returns
    -------
    popt : array
        Optimal values for the parameters so that the sum of the squared
        residuals of ``f(xdata, *popt) - ydata`` is minimized.
    pcov : 2-D array
        The estimated covariance of popt, from the Moore-Penrose inverse of
        the Jacobian at the solution.

    Raises
    ------
    ValueError
        if either `ydata` or `xdata` contain NaNs, or if incompatible options
        are used.
    FitError
        if the regression fails.
    OptimizeWarning
        if covariance of the parameters can not be estimated.

    Examples
    --------
    >>> import jax.numpy as jnp
    >>> from gnfit import CurveFit
    >>> def func(x, a, b):
    ...     return a * jnp.exp(-b * x)
    >>> xdata = np.linspace(0, 4, 50)
    >>> ydata = func(xdata, 2.5, 1.3)
    >>> cf = CurveFit()
    >>> popt, pcov = cf.curve_fit(func, xdata, ydata, p0=[2., 1.],
    ...                           jac='autodiff')
    """
        if p0 is None:
            # determine number of parameters by inspecting the function
            sig = signature(f)
            args = sig.parameters
            if len(args) < 2:
                raise ValueError("Unable to determine number of fit parameters.")
            n = len(args) - 1
            p0 = np.ones(n)
        else:
            p0 = np.atleast_1d(np.asarray(p0, dtype=float))
            n = p0.size

        # NaNs cannot be handled
        if check_finite:
            ydata = np.asarray_chkfinite(ydata, float)
            xdata = np.asarray_chkfinite(xdata, float)
        else:
            ydata = np.asarray(ydata, float)
            xdata = np.asarray(xdata, float)

        if ydata.size == 0:
            raise ValueError("`ydata` must not be empty!")

        m = len(ydata)
        xlen = len(xdata) if xdata.ndim == 1 else len(xdata[0])
        if xlen != m:
            raise ValueError("`xdata` and `ydata` lengths don't match: {0} "
                             "and {1}.".format(xlen, m))

        if sigma is not None:
            sigma = np.asarray(sigma, dtype=float)
            if sigma.shape != (m, ):
                raise ValueError("`sigma` has incorrect shape.")
            if np.any(sigma <= 0):
                raise ValueError("`sigma` must be positive.")

        model = CurveModel(f, xdata, ydata, p0, jac=jac, sigma=sigma)
        self.regression = Regression(model, iterator=iterator, **kwargs)
        popt = self.regression.regression()

        r = self.regression.residuals(popt)
        Jt = self.regression.jacobian(popt)
        cost = np.dot(r, r)

        # Do Moore-Penrose inverse discarding zero singular values.
        outputs = self.covariance_svd(jnp.asarray(Jt.T))
        s, VT = [np.array(output) for output in outputs]
        threshold = np.finfo(float).eps * max(Jt.shape) * s[0]
        s = s[s > threshold]
        VT = VT[:s.size]
        pcov = np.dot(VT.T / s**2, VT)

        warn_cov = False
        if s.size < n:
            # indeterminate covariance
            pcov = zeros((n, n), dtype=float)
            pcov.fill(inf)
            warn_cov = True
        elif not absolute_sigma:
            if m > n:
                s_sq = cost / (m - n)
                pcov = pcov * s_sq
            else:
                pcov.fill(inf)
                warn_cov = True

        if warn_cov:
            warnings.warn('Covariance of the parameters could not be estimated',
                          category=OptimizeWarning)
        return popt, pcov
