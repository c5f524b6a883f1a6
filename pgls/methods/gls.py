"""
Generalized least squares with a (possibly parameterised) residual correlation matrix.

The response and design are whitened with the Cholesky factor L of the
correlation matrix (L L^T = Sigma), after which the problem is ordinary
least squares. The residual variance is profiled out analytically, so the
log-likelihood depends on a correlation shape parameter only through Sigma;
that one-dimensional profile is maximised with scipy's bounded scalar
minimiser when the parameter is not fixed.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy import linalg, optimize, stats

from ..core.config import DefaultConfig
from ..core.exceptions import (
    ConvergenceError,
    ConvergenceWarning,
    ModelSpecificationError,
    RankDeficientDesignError,
    SingularCovarianceError,
)

logger = logging.getLogger(__name__)

METHODS = ("REML", "ML")

# objective value for trial parameters whose matrix is not positive-definite
_INFEASIBLE = 1e100


def check_method(method) -> str:
    """Normalises an estimation method name to 'REML' or 'ML'."""
    name = str(method).upper()
    if name not in METHODS:
        raise ModelSpecificationError(f"Unknown estimation method {method!r}; expected 'REML' or 'ML'")
    return name


@dataclass(frozen=True)
class GLSSolution:
    """Raw output of a single GLS solve for a fixed correlation matrix."""

    coefficients: np.ndarray
    covariance: np.ndarray
    sigma2: float
    log_likelihood: float
    residuals: np.ndarray
    fitted: np.ndarray
    method: str


def cholesky_factor(sigma, tolerance=1e-10) -> np.ndarray:
    """
    Lower Cholesky factor of a symmetric positive-definite matrix.

    Args:
        sigma: Square correlation or covariance matrix.
        tolerance (float): The smallest eigenvalue must exceed ``tolerance`` times the largest.

    Returns:
        numpy.ndarray: Lower-triangular L with L @ L.T == sigma.

    Raises:
        ValueError: If sigma is not square or not symmetric.
        SingularCovarianceError: If sigma is not (numerically) positive-definite.
    """
    values = np.asarray(sigma, dtype=float)
    if values.ndim != 2 or values.shape[0] != values.shape[1]:
        raise ValueError(f"Covariance matrix must be square, got shape {values.shape}")
    n = values.shape[0]
    if not np.all(np.isfinite(values)):
        raise SingularCovarianceError(f"{n}x{n} covariance matrix contains non-finite entries")
    if not np.allclose(values, values.T, rtol=1e-10, atol=1e-12):
        raise ValueError(f"{n}x{n} covariance matrix is not symmetric")

    eigenvalues = np.linalg.eigvalsh(values)
    smallest, largest = eigenvalues[0], eigenvalues[-1]
    if largest <= 0 or smallest <= tolerance * largest:
        raise SingularCovarianceError(
            f"{n}x{n} covariance matrix is not positive-definite: smallest eigenvalue "
            f"{smallest:.3g}, largest {largest:.3g} (relative tolerance {tolerance:g})"
        )
    try:
        return linalg.cholesky(values, lower=True)
    except linalg.LinAlgError as e:
        raise SingularCovarianceError(f"Cholesky factorisation of {n}x{n} covariance matrix failed: {e}") from e


def _dependent_columns(X, names, tol):
    kept, dependent = [], []
    for j in range(X.shape[1]):
        trial = kept + [j]
        if np.linalg.matrix_rank(X[:, trial], tol=tol) < len(trial):
            dependent.append(names[j])
        else:
            kept.append(j)
    return dependent


def gls(y, X, sigma, method="REML", positive_definite_tolerance=1e-10, rank_tolerance=None, names=None) -> GLSSolution:
    """
    Solves beta = (X' S^-1 X)^-1 X' S^-1 y and evaluates the (restricted) log-likelihood.

    ML:   sigma2 = RSS / n,       l = -1/2 [n log(2 pi sigma2) + n + log|S|]
    REML: sigma2 = RSS / (n - p), l = -1/2 [(n-p) log(2 pi sigma2) + (n-p) + log|S| + log|X' S^-1 X|]

    Args:
        y: Response vector of length n.
        X: Design matrix, n x p.
        sigma: n x n positive-definite correlation (or covariance) matrix.
        method (str): 'REML' or 'ML'.
        positive_definite_tolerance (float): See :func:`cholesky_factor`.
        rank_tolerance (float, optional): Singular-value threshold for the rank check.
        names (list, optional): Column names used in error messages.

    Returns:
        GLSSolution

    Raises:
        ModelSpecificationError: Mismatched shapes, non-finite data, or n <= p.
        RankDeficientDesignError: X does not have full column rank.
        SingularCovarianceError: sigma is not positive-definite.
    """
    method = check_method(method)
    y = np.asarray(y, dtype=float).ravel()
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    n, p = X.shape
    names = list(names) if names is not None else [f"x{j}" for j in range(p)]

    if len(y) != n:
        raise ModelSpecificationError(f"Response has {len(y)} values but the design has {n} rows")
    if p == 0:
        raise ModelSpecificationError("Design matrix has no columns")
    if not (np.all(np.isfinite(y)) and np.all(np.isfinite(X))):
        raise ModelSpecificationError("Response and design must not contain missing or infinite values")
    if n <= p:
        raise ModelSpecificationError(f"Need more observations ({n}) than coefficients ({p})")
    if np.shape(sigma) != (n, n):
        raise ValueError(f"Covariance matrix has shape {np.shape(sigma)}, expected ({n}, {n})")

    rank = np.linalg.matrix_rank(X, tol=rank_tolerance)
    if rank < p:
        dependent = _dependent_columns(X, names, rank_tolerance)
        raise RankDeficientDesignError(
            f"Design matrix has rank {rank} but {p} columns; "
            f"{dependent} are linear combinations of earlier columns",
            columns=dependent,
        )

    L = cholesky_factor(sigma, positive_definite_tolerance)
    y_w = linalg.solve_triangular(L, y, lower=True)
    X_w = linalg.solve_triangular(L, X, lower=True)
    Q, R = np.linalg.qr(X_w)
    beta = linalg.solve_triangular(R, Q.T @ y_w)

    resid_w = y_w - X_w @ beta
    rss = float(resid_w @ resid_w)
    logdet_sigma = 2.0 * float(np.sum(np.log(np.diag(L))))

    if method == "ML":
        df = n
        correction = 0.0
    else:
        df = n - p
        correction = 2.0 * float(np.sum(np.log(np.abs(np.diag(R)))))
    sigma2 = rss / df

    if sigma2 > 0:
        log_likelihood = -0.5 * (df * np.log(2.0 * np.pi * sigma2) + df + logdet_sigma + correction)
    else:
        logger.warning("Residual sum of squares is zero; the model fits the data exactly")
        log_likelihood = np.inf

    R_inv = linalg.solve_triangular(R, np.eye(p))
    covariance = sigma2 * (R_inv @ R_inv.T)
    fitted = X @ beta
    return GLSSolution(
        coefficients=beta,
        covariance=covariance,
        sigma2=sigma2,
        log_likelihood=float(log_likelihood),
        residuals=y - fitted,
        fitted=fitted,
        method=method,
    )


def optimize_shape_parameter(y, X, builder, bounds, method="REML", config=None, names=None):
    """
    Maximises the profile log-likelihood over a correlation shape parameter.

    The interior is searched with ``scipy.optimize.minimize_scalar(method='bounded')``
    and both bounds are evaluated as well, since that method never samples the
    bounds themselves and a boundary optimum (e.g. lambda = 0) is common.

    Args:
        y: Response vector.
        X: Design matrix.
        builder: Callable mapping a parameter value to a correlation matrix.
        bounds (tuple): (lower, upper) search interval.
        method (str): 'REML' or 'ML'.
        config: Configuration providing tolerances and optimiser settings.
        names: Design column names for error messages.

    Returns:
        tuple: (best value, log-likelihood at best value, converged flag, optimiser message)
    """
    config = config or DefaultConfig()
    lower, upper = (float(b) for b in bounds)

    def log_likelihood(value):
        try:
            solution = gls(
                y, X, builder(value), method,
                positive_definite_tolerance=config.positive_definite_tolerance,
                rank_tolerance=config.rank_tolerance,
                names=names,
            )
        except SingularCovarianceError as e:
            logger.debug("Parameter value %.6g gives a singular matrix: %s", value, e)
            return -np.inf
        logger.debug("Parameter value %.6g: log-likelihood %.6f", value, solution.log_likelihood)
        return solution.log_likelihood

    def objective(value):
        ll = log_likelihood(value)
        return -ll if np.isfinite(ll) else _INFEASIBLE

    if upper == lower:
        ll = log_likelihood(lower)
        return lower, ll, bool(np.isfinite(ll)), "degenerate interval"

    result = optimize.minimize_scalar(
        objective,
        bounds=(lower, upper),
        method="bounded",
        options={"xatol": config.optimizer_xatol, "maxiter": config.optimizer_maxiter},
    )
    candidates = [(float(result.x), log_likelihood(float(result.x)))]
    candidates += [(edge, log_likelihood(edge)) for edge in (lower, upper)]
    best_value, best_ll = max(candidates, key=lambda c: c[1])

    converged = bool(result.success) and bool(np.isfinite(best_ll))
    message = str(result.message)
    if not np.isfinite(best_ll):
        message = "no parameter value in the search interval gave a positive-definite matrix"
    logger.info(
        "Optimum at %.6g (log-likelihood %.6f) after %d evaluations",
        best_value, best_ll, int(getattr(result, "nfev", 0)),
    )
    return best_value, best_ll, converged, message


@dataclass(frozen=True)
class FitResult:
    """
    Result of one GLS fit. Never modified after construction.

    Attributes:
        coefficients: Table with columns estimate, std_error, t_value, p_value.
        covariance: Covariance matrix of the coefficient estimates.
        sigma: Residual standard error.
        log_likelihood: Log-likelihood (restricted when method is 'REML').
        method: 'REML' or 'ML'.
        n_obs: Number of observations.
        correlation_model: Name of the residual correlation structure.
        residuals: Raw (unwhitened) residuals.
        fitted_values: X @ beta.
        shape_parameter: Value of the correlation shape parameter, if any.
        shape_parameter_name: e.g. 'lambda' or 'alpha'.
        shape_parameter_estimated: Whether the parameter was estimated rather than fixed.
        converged: False when the optimiser reported failure; the fit then holds the best value found.
        optimizer_message: Message from the optimiser.
        response_name: Name of the response variable.
    """

    coefficients: pd.DataFrame
    covariance: pd.DataFrame
    sigma: float
    log_likelihood: float
    method: str
    n_obs: int
    correlation_model: str
    residuals: pd.Series
    fitted_values: pd.Series
    shape_parameter: Optional[float] = None
    shape_parameter_name: Optional[str] = None
    shape_parameter_estimated: bool = False
    converged: bool = True
    optimizer_message: str = ""
    response_name: Optional[str] = None

    @property
    def params(self) -> pd.Series:
        return self.coefficients["estimate"]

    @property
    def std_errors(self) -> pd.Series:
        return self.coefficients["std_error"]

    @property
    def n_coefficients(self) -> int:
        return len(self.coefficients)

    @property
    def df_residual(self) -> int:
        return self.n_obs - self.n_coefficients

    @property
    def n_parameters(self) -> int:
        """Coefficients, residual variance and an estimated shape parameter."""
        return self.n_coefficients + 1 + int(self.shape_parameter_estimated)

    @property
    def aic(self) -> float:
        return -2.0 * self.log_likelihood + 2.0 * self.n_parameters

    @property
    def bic(self) -> float:
        n = self.n_obs - (self.n_coefficients if self.method == "REML" else 0)
        return -2.0 * self.log_likelihood + self.n_parameters * np.log(n)

    def summary(self) -> str:
        """Printable report of the fit."""
        lines = [f"Phylogenetic generalized least squares fit by {self.method}"]
        if self.response_name:
            lines.append(f"  Response: {self.response_name}")
        correlation = self.correlation_model
        if self.shape_parameter_name is not None and self.shape_parameter is not None:
            how = "estimated" if self.shape_parameter_estimated else "fixed"
            correlation += f" ({self.shape_parameter_name} = {self.shape_parameter:.4g}, {how})"
        lines.append(f"  Correlation: {correlation}")
        lines.append(f"  Observations: {self.n_obs}")
        if not self.converged:
            lines.append(f"  WARNING: optimiser did not converge: {self.optimizer_message}")
        lines.append("")
        lines.append("       AIC        BIC     logLik")
        lines.append(f"{self.aic:10.4f} {self.bic:10.4f} {self.log_likelihood:10.4f}")
        lines.append("")
        lines.append("Coefficients:")
        table = self.coefficients.rename(
            columns={"estimate": "Value", "std_error": "Std.Error", "t_value": "t-value", "p_value": "p-value"}
        )
        lines.append(table.to_string(float_format=lambda v: f"{v:.6g}"))
        lines.append("")
        lines.append(f"Residual standard error: {self.sigma:.6g} on {self.df_residual} degrees of freedom")
        return "\n".join(lines)


def _as_labelled(response, design):
    if isinstance(design, pd.DataFrame):
        names = [str(c) for c in design.columns]
        index = design.index
    else:
        design = np.asarray(design, dtype=float)
        if design.ndim == 1:
            design = design[:, None]
        names = [f"x{j}" for j in range(design.shape[1])]
        index = None
    response_name = getattr(response, "name", None)
    if index is None and isinstance(response, pd.Series):
        index = response.index
    if index is None:
        index = pd.RangeIndex(len(np.asarray(response).ravel()))
    return np.asarray(response, dtype=float).ravel(), np.asarray(design, dtype=float), names, index, response_name


def fit_gls(
    response,
    design,
    correlation,
    *,
    shape_parameter=None,
    bounds=None,
    method=None,
    parameter_name=None,
    correlation_model=None,
    config=None,
) -> FitResult:
    """
    Fits a GLS regression, optionally estimating one correlation shape parameter.

    Args:
        response: Response vector (a named pandas Series keeps its labels).
        design: Design matrix (a pandas DataFrame keeps its column names).
        correlation: Either a fixed n x n matrix, or a callable mapping a shape
                     parameter value to a matrix.
        shape_parameter (float, optional): Fixed parameter passed to a callable ``correlation``.
        bounds (tuple, optional): Search interval. With a callable ``correlation`` and no
                                  ``shape_parameter``, the parameter is estimated over it.
        method (str, optional): 'REML' or 'ML'. Defaults to ``config.estimation_method``.
        parameter_name (str, optional): Name reported for the shape parameter.
        correlation_model (str, optional): Name reported for the correlation structure.
        config: Configuration object. Defaults to DefaultConfig().

    Returns:
        FitResult

    Raises:
        SingularCovarianceError, RankDeficientDesignError, ModelSpecificationError:
            as raised by :func:`gls` for the final fit.
        ConvergenceError: If the optimiser fails and ``config.strict_convergence`` is set.
    """
    config = config or DefaultConfig()
    method = check_method(method or config.estimation_method)
    y, X, names, index, response_name = _as_labelled(response, design)

    estimated = False
    converged = True
    message = ""
    value = shape_parameter
    best_ll = None

    if callable(correlation):
        builder = correlation
        if shape_parameter is None and bounds is not None:
            estimated = True
            logger.info(
                "Estimating %s in [%g, %g] by %s", parameter_name or "shape parameter", bounds[0], bounds[1], method
            )
            value, best_ll, converged, message = optimize_shape_parameter(
                y, X, builder, bounds, method=method, config=config, names=names
            )
        sigma = builder(value)
    else:
        if shape_parameter is not None:
            raise ModelSpecificationError("A fixed shape parameter needs a callable correlation builder")
        sigma = correlation

    solution = gls(
        y, X, sigma, method,
        positive_definite_tolerance=config.positive_definite_tolerance,
        rank_tolerance=config.rank_tolerance,
        names=names,
    )

    if not converged:
        text = (
            f"Optimisation of {parameter_name or 'the shape parameter'} did not converge ({message}); "
            f"best value {value:.6g} with log-likelihood {best_ll:.6g}"
        )
        if config.strict_convergence:
            raise ConvergenceError(text, best_value=value, log_likelihood=best_ll)
        logger.warning(text)
        warnings.warn(text, ConvergenceWarning, stacklevel=2)

    se = np.sqrt(np.diag(solution.covariance))
    t_values = solution.coefficients / se
    df_residual = len(y) - len(names)
    p_values = 2.0 * stats.t.sf(np.abs(t_values), df_residual)
    table = pd.DataFrame(
        {"estimate": solution.coefficients, "std_error": se, "t_value": t_values, "p_value": p_values},
        index=names,
    )

    return FitResult(
        coefficients=table,
        covariance=pd.DataFrame(solution.covariance, index=names, columns=names),
        sigma=float(np.sqrt(solution.sigma2)),
        log_likelihood=solution.log_likelihood,
        method=method,
        n_obs=len(y),
        correlation_model=correlation_model or ("custom" if callable(correlation) else "fixed"),
        residuals=pd.Series(solution.residuals, index=index, name="residual"),
        fitted_values=pd.Series(solution.fitted, index=index, name="fitted"),
        shape_parameter=None if value is None else float(value),
        shape_parameter_name=parameter_name,
        shape_parameter_estimated=estimated,
        converged=converged,
        optimizer_message=message,
        response_name=response_name,
    )
