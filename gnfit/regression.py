"""Regression controller: owns the iteration loop and the termination test
and delegates each step to an iteration strategy."""
from dataclasses import dataclass, replace
from warnings import warn
import numpy as np
from typing import Optional

from gnfit.common_jax import EPS, cJIT, column_vector
from gnfit.fittable import Fittable
from gnfit.gauss_newton import GaussNewton, RegressionIterator
from gnfit.jacobian import JacobianProvider
from gnfit._optimize import (DidNotConvergeError, FailedInitError,
                             OptimizeResult, UndefinedResidualError)

__all__ = ['Regression', 'RegressionOptions', 'check_options',
           'TERMINATION_MESSAGES']


TERMINATION_MESSAGES = {
    0: "The maximum number of iterations is exceeded.",
    1: "`reltol` termination condition is satisfied.",
}


@dataclass(frozen=True)
class RegressionOptions:
    """Configuration of one regression run, captured when the run starts."""

    verbose: int = 0
    reltol: float = 1e-4
    maxiters: int = 32
    fdrel: float = 1e-4
    fdabs: Optional[float] = None
    strict: bool = False


def check_options(options: RegressionOptions) -> RegressionOptions:
    """Check and prepare the options for a run.

    A `reltol` of None is treated as 0. A `reltol` lower than the machine
    epsilon is accepted with a warning since it effectively disables the
    tolerance test, leaving only the iteration cap.

    Parameters
    ----------
    options : RegressionOptions
        The options as set by the caller.

    Returns
    -------
    RegressionOptions
        The validated options.
    """
    if options.verbose not in [0, 1]:
        raise ValueError("`verbose` must be in [0, 1].")

    reltol = options.reltol
    if reltol is None:
        reltol = 0
    if reltol < 0:
        raise ValueError("`reltol` must be non-negative.")
    if reltol < EPS:
        warn("Setting `reltol` below the machine epsilon ({:.2e}) effectively "
             "disables the corresponding termination condition."
             .format(EPS))

    maxiters = options.maxiters
    if (isinstance(maxiters, bool) or not isinstance(maxiters, (int, np.integer))
            or maxiters <= 0):
        raise ValueError("`maxiters` must be a positive integer.")

    if not np.isfinite(options.fdrel) or options.fdrel <= 0:
        raise ValueError("`fdrel` must be a positive number.")

    fdabs = options.fdabs
    if fdabs is not None and (not np.isfinite(fdabs) or fdabs <= 0):
        raise ValueError("`fdabs` must be None or a positive number.")

    return replace(options, verbose=int(options.verbose),
                   reltol=float(reltol), maxiters=int(maxiters),
                   fdrel=float(options.fdrel),
                   fdabs=None if fdabs is None else float(fdabs),
                   strict=bool(options.strict))


def print_header_regression():
    print("{0:^15}{1:^15}{2:^15}{3:^15}"
          .format("Iteration", "Function evals", "Step norm", "Rel. error"))


def print_iteration_regression(iteration, nfev, step_norm, relerr):
    if step_norm is None:
        step_norm = " " * 15
    else:
        step_norm = "{0:^15.2e}".format(step_norm)

    if relerr is None:
        relerr = " " * 15
    else:
        relerr = "{0:^15.2e}".format(relerr)

    print("{0:^15}{1:^15}{2}{3}".format(iteration, nfev, step_norm, relerr))


class Regression():
    """Drive an iteration strategy until the parameters stop changing.

    A Regression is built once per (model, strategy) pairing and can run any
    number of independent fits. The public attributes `verbose`, `reltol`,
    `maxiters`, `fdrel`, `fdabs` and `strict` may be changed between runs;
    they are copied into `options` when a run starts and are not looked at
    again until the next one.

    Parameters
    ----------
    model : Fittable
        The regression model.
    iterator : RegressionIterator, optional
        The iteration strategy, by default a new GaussNewton.
    verbose : {0, 1}, optional
        Print one line per iteration and a termination report.
    reltol : float, optional
        Relative tolerance on the change of the parameter vector between
        two iterations, by default 1e-4.
    maxiters : int, optional
        Maximum number of iterations, by default 32.
    fdrel : float, optional
        Relative step of the finite-difference Jacobian, by default 1e-4.
    fdabs : float, optional
        Absolute finite-difference step for zero-valued parameters. Defaults
        to `fdrel`.
    strict : bool, optional
        If True, hitting `maxiters` before `reltol` is met raises
        DidNotConvergeError instead of returning the last parameters.
    """

    def __init__(self,
                 model: Fittable,
                 iterator: Optional[RegressionIterator] = None,
                 verbose: int = 0,
                 reltol: float = 1e-4,
                 maxiters: int = 32,
                 fdrel: float = 1e-4,
                 fdabs: Optional[float] = None,
                 strict: bool = False):
        self.model = model
        self.iterator = GaussNewton() if iterator is None else iterator
        self.verbose = verbose
        self.reltol = reltol
        self.maxiters = maxiters
        self.fdrel = fdrel
        self.fdabs = fdabs
        self.strict = strict

        self.cJIT = cJIT
        self.options = None
        self.result = None
        self.jac_provider = None
        self.testparams = None
        self.nit = 0
        self.nfev = 0
        self.njev = 0
        self.status = None
        self.relerr = None
        self.step_norm = None


    @property
    def iterations(self) -> int:
        """Number of iterations completed by the current or last run."""
        return self.nit


    def init_fit(self) -> np.ndarray:
        """Start a run: capture the options, reset the iteration state and
        return the starting parameters.

        Raises
        ------
        FailedInitError
            If the model does not provide usable starting parameters.
        """
        self.options = check_options(RegressionOptions(
            verbose=self.verbose, reltol=self.reltol, maxiters=self.maxiters,
            fdrel=self.fdrel, fdabs=self.fdabs, strict=self.strict))

        self.nit = 0
        self.nfev = 0
        self.njev = 0
        self.status = None
        self.relerr = None
        self.step_norm = None
        self.result = None
        self.testparams = None

        n = self.model.param_count
        if n is None or n <= 0:
            raise FailedInitError(
                "Model reports {0} parameters, nothing to fit.".format(n))

        x0 = self.model.initial_params
        if x0 is None:
            raise FailedInitError("Model did not supply starting parameters.")
        try:
            x0 = column_vector(x0)
        except (TypeError, ValueError) as e:
            raise FailedInitError(
                "Starting parameters are not a vector of reals: {0}"
                .format(e)) from e

        if x0.size != n:
            raise FailedInitError(
                "Model supplied {0} starting parameters, expected {1}."
                .format(x0.size, n))
        if not np.all(np.isfinite(x0)):
            raise FailedInitError("Starting parameters are not finite.")

        self.jac_provider = JacobianProvider(
            self.residuals, jac=self.model.analytic_jacobian,
            fdrel=self.options.fdrel, fdabs=self.options.fdabs)
        self.testparams = x0.copy()
        return x0


    def residuals(self, params: np.ndarray) -> np.ndarray:
        """Evaluate the model residuals at `params`.

        Raises
        ------
        UndefinedResidualError
            If the model fails to evaluate or returns non-finite values.
        ValueError
            If the model returns a vector of the wrong length.
        """
        self.nfev += 1
        params = np.array(params, dtype=float)
        try:
            f = self.model.residuals(params)
            f = np.atleast_1d(np.asarray(f, dtype=float))
        except UndefinedResidualError:
            raise
        except (ArithmeticError, ValueError) as e:
            raise UndefinedResidualError(
                "Residuals could not be evaluated at {0}: {1}"
                .format(params, e), params) from e

        m = self.model.point_count
        if f.shape != (m,):
            raise ValueError("`residuals` must return a 1-d array of length "
                             "{0}, got shape {1}.".format(m, f.shape))
        if not np.all(np.isfinite(f)):
            raise UndefinedResidualError(
                "Residuals are not finite at {0}.".format(params), params)
        return f


    def jacobian(self, params: np.ndarray) -> np.ndarray:
        """Parameter-major Jacobian at `params`."""
        self.njev += 1
        return self.jac_provider.jacobian(np.array(params, dtype=float),
                                          self.model.point_count)


    def check_terminate(self, params: np.ndarray) -> bool:
        """Termination test, called once per iteration with the parameters
        the iteration produced.

        The very first call of a run always continues, so a run takes at
        least two iterations whatever `maxiters` is. Afterwards the run
        stops when the relative change with respect to the previous
        iteration drops below `reltol`, or when `maxiters` iterations have
        been done.

        Returns
        -------
        bool
            True if the regression should continue.
        """
        params = column_vector(params)
        first = self.nit == 0
        self.nit += 1

        if first:
            self.relerr = None
            self.step_norm = None
        else:
            delta, mag = [float(v) for v in
                          self.cJIT.relative_change(params, self.testparams)]
            self.step_norm = delta
            # parameters at the origin, compare absolutely
            self.relerr = delta / mag if mag > 0 else delta

        if self.options.verbose:
            print_iteration_regression(self.nit, self.nfev, self.step_norm,
                                       self.relerr)

        self.testparams = params
        if self.relerr is not None and self.relerr < self.options.reltol:
            self.status = 1
            return False

        if not first and self.nit >= self.options.maxiters:
            self.status = 0
            return False

        return True


    def regression(self) -> np.ndarray:
        """Run the regression and return the fitted parameters.

        Returns
        -------
        np.ndarray
            The final parameter vector, shape (param_count,). Whether the
            run converged or ran out of iterations is recorded in `result`.

        Raises
        ------
        FailedInitError, UndefinedResidualError, SingularJacobianError
            On the corresponding failure, the run is aborted immediately.
        DidNotConvergeError
            In strict mode, when `maxiters` is reached first.
        """
        beta = self.init_fit()

        if self.options.verbose:
            print("Regression: starting {0} fit of {1} parameters to {2} "
                  "points.".format(self.iterator.name, beta.size,
                                   self.model.point_count))
            print_header_regression()

        while True:
            beta = column_vector(self.iterator.refine(beta.copy(), self))
            if not self.check_terminate(beta):
                break

        self.result = OptimizeResult(
            x=beta.copy(), status=self.status, success=self.status > 0,
            message=TERMINATION_MESSAGES[self.status], nit=self.nit,
            nfev=self.nfev, njev=self.njev, relerr=self.relerr)

        if self.options.verbose:
            print(self.result.message)
            print("Iterations {0}, function evaluations {1}, Jacobian "
                  "evaluations {2}.".format(self.nit, self.nfev, self.njev))

        if self.options.strict and self.status == 0:
            raise DidNotConvergeError(
                "Regression did not reach `reltol` = {0:.2e} within {1} "
                "iterations.".format(self.options.reltol,
                                     self.options.maxiters), self.result)
        return beta
