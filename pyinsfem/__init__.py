"""pyinsfem - adaptive Taylor-Hood finite elements for incompressible flow."""
from .errors import (ConfigurationError, ConvergenceError, LinearSolveError,
                     NewtonConvergenceError, SingularPreconditionerError)
from .parameters import Parameters

__version__ = "0.1.0"
__all__ = ['Parameters', 'ConfigurationError', 'ConvergenceError', 'LinearSolveError',
           'NewtonConvergenceError', 'SingularPreconditionerError', '__version__']
