"""
Errors and warnings raised by the pgls package.

Every error derives from PGLSError. Most also derive from ValueError so that
callers catching the built-in exception for bad input keep working.
"""


class PGLSError(Exception):
    """Base class for all pgls errors."""


class ConfigError(PGLSError, ValueError):
    """A configuration file could not be parsed or holds an invalid value."""


class MalformedTreeError(PGLSError, ValueError):
    """The tree has a cycle, several roots, a missing or negative length, or bad tip labels."""


class IllDefinedCorrelationError(PGLSError, ValueError):
    """A covariance matrix cannot be normalised into a correlation matrix."""


class NonUltrametricTreeError(IllDefinedCorrelationError):
    """
    Raised when an operation needs equal root-to-tip distances and the tree does not have them.

    Attributes:
        shortest: (tip, distance) of the tip closest to the root.
        longest: (tip, distance) of the tip furthest from the root.
    """

    def __init__(self, message, shortest=None, longest=None):
        super().__init__(message)
        self.shortest = shortest
        self.longest = longest


class SingularCovarianceError(PGLSError, ArithmeticError):
    """The covariance or correlation matrix is not positive-definite."""


class RankDeficientDesignError(PGLSError, ValueError):
    """
    The design matrix does not have full column rank.

    Attributes:
        columns: Names of the columns that are linear combinations of earlier columns.
    """

    def __init__(self, message, columns=()):
        super().__init__(message)
        self.columns = tuple(columns)


class ModelSpecificationError(PGLSError, ValueError):
    """The model specification does not match the data table."""


class InvalidParameterError(PGLSError, ValueError):
    """A correlation shape parameter lies outside its valid range."""


class ConvergenceError(PGLSError, RuntimeError):
    """
    The shape-parameter optimiser did not converge and strict convergence was requested.

    Attributes:
        best_value: Best parameter value found.
        log_likelihood: Log-likelihood at best_value.
    """

    def __init__(self, message, best_value=None, log_likelihood=None):
        super().__init__(message)
        self.best_value = best_value
        self.log_likelihood = log_likelihood


class ComparisonError(PGLSError, ValueError):
    """Two fits cannot be compared with a likelihood-ratio test."""


class IdentifierMismatchError(PGLSError, ValueError):
    """The tree and the trait table share no identifiers at all."""


class IdentifierMismatchWarning(UserWarning):
    """Tips or table rows were dropped while aligning the tree with the trait table."""


class ConvergenceWarning(UserWarning):
    """The shape-parameter optimiser reported failure; the fit holds the best value found."""
