"""
gnfit: nonlinear least-squares regression with Gauss-Newton iterations.
"""

__version__ = "0.1.0"

from ._optimize import *
from .common_jax import *
from .jacobian import *
from .fittable import *
from .gauss_newton import *
from .regression import *
from .minpack import *

__all__ = [s for s in dir() if not s.startswith('_')]
