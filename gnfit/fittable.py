"""Model capabilities consumed by the regression controller."""
from abc import ABC, abstractmethod
import numpy as np
from typing import Any, Callable, Dict, Optional, Sequence, Union

from gnfit.jacobian import AutoDiffJacobian

__all__ = ['Fittable', 'AnalyticFittable', 'FunctionModel']


class Fittable(ABC):
    """A regression model: a residual vector as a function of a parameter
    vector.

    Subclasses must be deterministic and side-effect free in `residuals`,
    the finite-difference Jacobian relies on it.

    A model that knows its own derivatives sets `analytic_jacobian` to a
    callable ``jac(params) -> ndarray`` of shape
    ``(param_count, point_count)``. It is then used exclusively.
    """

    analytic_jacobian: Optional[Callable] = None

    @property
    @abstractmethod
    def param_count(self) -> int:
        """Dimensionality of the parameter vector."""

    @property
    @abstractmethod
    def point_count(self) -> int:
        """Number of data points, i.e. length of the residual vector."""

    @property
    @abstractmethod
    def initial_params(self) -> Sequence[float]:
        """Starting parameters for a fit."""

    @abstractmethod
    def residuals(self, params: np.ndarray) -> Sequence[float]:
        """Residuals at `params`, shape (point_count,)."""


class AnalyticFittable(Fittable):
    """A model supplying a closed-form Jacobian through `jacobian`."""

    @property
    def analytic_jacobian(self) -> Callable:
        return self.jacobian

    @abstractmethod
    def jacobian(self, params: np.ndarray) -> np.ndarray:
        """Parameter-major Jacobian at `params`, one row per parameter."""


class FunctionModel(Fittable):
    """Model built from a plain residual function.

    Parameters
    ----------
    fun : Callable
        ``fun(params, *args, **kwargs)`` returning the residual vector.
    x0 : array_like
        Starting parameters.
    jac : {None, callable, 'autodiff'}, optional
        None uses finite differences. A callable is used as
        ``jac(params, *args, **kwargs)`` and must return the Jacobian with
        one row per parameter. 'autodiff' differentiates `fun` with JAX's
        jacfwd, which requires `fun` to be written with ``jax.numpy``.
    args : tuple, optional
        Extra positional arguments for `fun` and `jac`.
    kwargs : dict, optional
        Extra keyword arguments for `fun` and `jac`.
    """

    def __init__(self,
                 fun: Callable,
                 x0: Union[Sequence[float], np.ndarray],
                 jac: Union[None, str, Callable] = None,
                 args: Sequence[Any] = (),
                 kwargs: Optional[Dict[str, Any]] = None):
        if jac not in [None, 'autodiff'] and not callable(jac):
            raise ValueError("`jac` must be None, 'autodiff' or callable.")

        self.fun = fun
        self.args = tuple(args)
        self.kwargs = {} if kwargs is None else dict(kwargs)
        self.x0 = np.atleast_1d(np.asarray(x0, dtype=float))
        self.m = np.atleast_1d(
            np.asarray(fun(self.x0, *self.args, **self.kwargs))).size

        if jac == 'autodiff':
            adj = AutoDiffJacobian()
            self.analytic_jacobian = adj.create_ad_jacobian(
                fun, self.args, self.kwargs)
        elif jac is not None:
            self.analytic_jacobian = lambda p: jac(p, *self.args,
                                                   **self.kwargs)

    @property
    def param_count(self) -> int:
        return self.x0.size

    @property
    def point_count(self) -> int:
        return self.m

    @property
    def initial_params(self) -> np.ndarray:
        return self.x0.copy()

    def residuals(self, params: np.ndarray) -> np.ndarray:
        return np.atleast_1d(np.asarray(
            self.fun(params, *self.args, **self.kwargs), dtype=float))
