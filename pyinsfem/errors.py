"""pyinsfem.errors

Exception taxonomy shared by the whole package.

* :class:`ConfigurationError` - bad input detected before any numerics run.
* :class:`ConvergenceError`  - an iterative process ran out of budget.
* :class:`SingularPreconditionerError` - a zero (or non-finite) pivot showed
  up while building one of the nested preconditioner solves.
"""


class ConfigurationError(ValueError):
    """Invalid parameters, boundary flags or data shapes."""


class ConvergenceError(RuntimeError):
    """Base class for solver failures."""


class LinearSolveError(ConvergenceError):
    """A Krylov solve did not reach its tolerance within its iteration budget."""

    def __init__(self, message, iterations=None, residual=None):
        super().__init__(message)
        self.iterations = iterations
        self.residual = residual


class NewtonConvergenceError(ConvergenceError):
    """The Newton iteration ceiling was reached."""

    def __init__(self, message, history=None):
        super().__init__(message)
        self.history = list(history or [])


class SingularPreconditionerError(ConvergenceError):
    """Zero diagonal entry or exactly singular factor in an inner preconditioner."""

    def __init__(self, message, matrix_name=None, rows=None):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.rows = rows
