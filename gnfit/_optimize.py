"""Errors raised by the regression machinery and the result container
returned alongside the fitted parameters."""
from scipy.optimize import OptimizeResult, OptimizeWarning

__all__ = ['FitError', 'UndefinedResidualError', 'SingularJacobianError',
           'FailedInitError', 'DidNotConvergeError', 'OptimizeResult',
           'OptimizeWarning']


class FitError(RuntimeError):
    """Base class for failures that abort a regression run."""


class UndefinedResidualError(FitError):
    """The model could not evaluate its residuals at the requested
    parameters (domain error, non-finite output, ...)."""

    def __init__(self, message: str, params=None):
        super().__init__(message)
        self.params = params


class SingularJacobianError(FitError):
    """The Gram matrix ``Jt @ Jt.T`` could not be inverted. This usually
    means too little data or collinear parameters."""


class FailedInitError(FitError):
    """The model did not supply usable starting parameters."""


class DidNotConvergeError(FitError):
    """Raised in strict mode when the iteration budget is exhausted before
    the relative tolerance is met. The best-effort result is kept on the
    exception."""

    def __init__(self, message: str, result: OptimizeResult):
        super().__init__(message)
        self.result = result
