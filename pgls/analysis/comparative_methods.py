"""
Phylogenetic Comparative Methods (PCM)

Regression of trait data that accounts for the non-independence of species
through a residual correlation structure derived from the phylogeny
(Phylogenetic Generalized Least Squares), and likelihood-ratio comparison of
fitted models.

Models are described by an explicit ModelSpec (a response column and typed
predictor columns) rather than a formula string.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
import pandas as pd
from scipy import stats

from ..core.config import DefaultConfig
from ..core.data_loader import align_tree_and_table
from ..core.exceptions import ComparisonError, ModelSpecificationError
from ..methods.correlation import Brownian
from ..methods.gls import FitResult, check_method, fit_gls

logger = logging.getLogger(__name__)

PREDICTOR_KINDS = ("numeric", "categorical")


@dataclass(frozen=True)
class Predictor:
    """A named predictor column and how it enters the design matrix."""
    name: str
    kind: str = "numeric"

    def __post_init__(self):
        if self.kind not in PREDICTOR_KINDS:
            raise ModelSpecificationError(
                f"Predictor {self.name!r} has kind {self.kind!r}; expected one of {PREDICTOR_KINDS}"
            )


@dataclass(frozen=True)
class ModelSpec:
    """
    Structured model specification.

    Args:
        response (str): Name of the response column.
        predictors (tuple): Predictor entries, in design-matrix order.
        intercept (bool): Whether to include an intercept column.
    """
    response: str
    predictors: Tuple[Predictor, ...] = field(default_factory=tuple)
    intercept: bool = True

    def __post_init__(self):
        predictors = tuple(p if isinstance(p, Predictor) else Predictor(p) for p in self.predictors)
        object.__setattr__(self, "predictors", predictors)
        names = [p.name for p in predictors]
        if len(set(names)) != len(names):
            raise ModelSpecificationError(f"Predictors listed more than once: {names}")
        if self.response in names:
            raise ModelSpecificationError(f"Response {self.response!r} is also listed as a predictor")

    @classmethod
    def from_names(cls, response, numeric=(), categorical=(), intercept=True):
        """Builds a spec from lists of numeric and categorical column names."""
        predictors = [Predictor(name, "numeric") for name in numeric]
        predictors += [Predictor(name, "categorical") for name in categorical]
        return cls(response, tuple(predictors), intercept)

    @property
    def columns(self):
        return [self.response] + [p.name for p in self.predictors]

    def describe(self) -> str:
        terms = ["1" if self.intercept else "0"]
        terms += [p.name if p.kind == "numeric" else f"C({p.name})" for p in self.predictors]
        return f"{self.response} ~ {' + '.join(terms)}"


def select_complete_rows(table, spec):
    """
    Keeps the model's columns and drops rows with a missing value in any of them.

    Raises:
        ModelSpecificationError: If a column named by the spec is absent.
    """
    missing = [c for c in spec.columns if c not in table.columns]
    if missing:
        raise ModelSpecificationError(
            f"Columns {missing} not found in trait table; available columns are {list(table.columns)}"
        )
    subset = table[spec.columns]
    complete = subset.dropna()
    if len(complete) < len(subset):
        dropped = [str(i) for i in subset.index.difference(complete.index)]
        logger.warning("Dropping %d row(s) with missing values: %s", len(dropped), ", ".join(dropped))
    return complete


def _sorted_levels(values):
    if isinstance(values.dtype, pd.CategoricalDtype):
        present = set(values.dropna())
        return [c for c in values.cat.categories if c in present]
    unique = list(values.unique())
    try:
        return sorted(unique)
    except TypeError:
        # mixed types have no natural order
        return sorted(unique, key=str)


def build_design(table, spec):
    """
    Builds the response vector and design matrix for a model.

    Numeric predictors enter as-is; categorical predictors are treatment-coded
    against their first level, with columns named ``name[T.level]``. Levels are
    ordered by their original values (numerically for numeric codes, so 2 comes
    before 10) or, for a pandas Categorical, by its declared categories.

    Args:
        table (pandas.DataFrame): Trait table without missing values in the model columns.
        spec (ModelSpec): The model.

    Returns:
        tuple: (pandas.Series response, pandas.DataFrame design)

    Raises:
        ModelSpecificationError: Missing columns, non-numeric data in numeric columns,
                                 or a categorical predictor with a single level.
    """
    missing = [c for c in spec.columns if c not in table.columns]
    if missing:
        raise ModelSpecificationError(f"Columns {missing} not found in trait table")
    if table[spec.columns].isna().any().any():
        raise ModelSpecificationError("Model columns contain missing values; drop them with select_complete_rows")

    y = table[spec.response]
    if not pd.api.types.is_numeric_dtype(y):
        raise ModelSpecificationError(f"Response {spec.response!r} is not numeric")
    y = y.astype(float)

    columns = {}
    if spec.intercept:
        columns["(Intercept)"] = np.ones(len(table))
    # without an intercept the first factor keeps all of its levels
    full_coding = not spec.intercept
    for predictor in spec.predictors:
        values = table[predictor.name]
        if predictor.kind == "numeric":
            if not pd.api.types.is_numeric_dtype(values):
                raise ModelSpecificationError(
                    f"Predictor {predictor.name!r} is declared numeric but holds {values.dtype} data"
                )
            columns[predictor.name] = values.astype(float).to_numpy()
            continue

        labels = values.astype(str).to_numpy()
        levels = [str(v) for v in _sorted_levels(values)]
        if len(levels) < 2:
            raise ModelSpecificationError(
                f"Categorical predictor {predictor.name!r} has a single level {levels}"
            )
        coded = levels if full_coding else levels[1:]
        full_coding = False
        for level in coded:
            columns[f"{predictor.name}[T.{level}]"] = (labels == level).astype(float)

    if not columns:
        raise ModelSpecificationError("Model has neither an intercept nor predictors")
    X = pd.DataFrame(columns, index=table.index)
    return y, X


def pgls(tree, table, spec, correlation=None, method=None, config=None) -> FitResult:
    """
    Phylogenetic Generalized Least Squares (PGLS).

    Drops rows with missing values in the model columns, restricts tree and
    table to their shared species, builds the design matrix and the
    correlation structure from the tree, and fits the regression. The
    correlation shape parameter (Pagel's lambda, OU alpha) is estimated by
    maximum (restricted) likelihood unless fixed on the structure.

    Args:
        tree (PhyloTree): The phylogeny.
        table (pandas.DataFrame): Trait table indexed by species.
        spec (ModelSpec): The model.
        correlation: A correlation structure; defaults to Brownian().
        method (str): 'REML' or 'ML'; defaults to ``config.estimation_method``.
        config: Configuration object. Defaults to DefaultConfig().

    Returns:
        FitResult
    """
    config = config or DefaultConfig()
    correlation = correlation if correlation is not None else Brownian()
    method = check_method(method or config.estimation_method)

    complete = select_complete_rows(table, spec)
    tree, aligned = align_tree_and_table(tree, complete)
    y, X = build_design(aligned, spec)

    logger.info(
        "Fitting %s with %s correlation by %s on %d species",
        spec.describe(), correlation.name, method, len(y),
    )
    builder = correlation.builder(tree, config)
    bounds = correlation.bounds(config) if correlation.is_estimated else None
    return fit_gls(
        y, X, builder,
        shape_parameter=correlation.value,
        bounds=bounds,
        method=method,
        parameter_name=correlation.parameter_name,
        correlation_model=correlation.name,
        config=config,
    )


@dataclass(frozen=True)
class ModelComparison:
    """Likelihood-ratio test between two fits."""
    statistic: float
    df: int
    p_value: float
    log_likelihoods: Tuple[float, float]
    method: str

    def __str__(self):
        return (
            f"Likelihood ratio test ({self.method}): L.Ratio = {self.statistic:.4f}, "
            f"df = {self.df}, p-value = {self.p_value:.4g}"
        )


def compare_models(fit_a, fit_b) -> ModelComparison:
    """
    Likelihood-ratio test between two nested fits.

    The statistic is twice the log-likelihood gain of the model with more
    parameters, referred to a chi-squared distribution with as many degrees of
    freedom as the difference in parameter counts. Whether the models are
    nested is the caller's responsibility. Models that differ in their fixed
    effects must both be fitted by ML; REML fits are comparable only when the
    fixed effects are identical and the correlation structures differ.

    Args:
        fit_a (FitResult): First fit.
        fit_b (FitResult): Second fit.

    Returns:
        ModelComparison

    Raises:
        ComparisonError: If the fits use different estimation methods or observations.
    """
    if fit_a.method != fit_b.method:
        raise ComparisonError(
            f"Cannot compare a {fit_a.method} fit with a {fit_b.method} fit; refit both with the same method"
        )
    if fit_a.n_obs != fit_b.n_obs:
        raise ComparisonError(
            f"Fits use different numbers of observations ({fit_a.n_obs} and {fit_b.n_obs})"
        )
    if set(fit_a.residuals.index) != set(fit_b.residuals.index):
        only_a = fit_a.residuals.index.difference(fit_b.residuals.index)
        only_b = fit_b.residuals.index.difference(fit_a.residuals.index)
        raise ComparisonError(
            f"Fits use different observations: {list(only_a)} only in the first, "
            f"{list(only_b)} only in the second"
        )
    if fit_a.method == "REML" and list(fit_a.coefficients.index) != list(fit_b.coefficients.index):
        text = "REML likelihoods of models with different fixed effects are not comparable; refit with method='ML'"
        logger.warning(text)
        warnings.warn(text, UserWarning, stacklevel=2)

    small, big = sorted((fit_a, fit_b), key=lambda f: f.n_parameters)
    df = big.n_parameters - small.n_parameters
    statistic = max(0.0, 2.0 * (big.log_likelihood - small.log_likelihood))
    if df == 0:
        p_value = 1.0 if statistic == 0 else float("nan")
    else:
        p_value = float(stats.chi2.sf(statistic, df))

    return ModelComparison(
        statistic=statistic,
        df=df,
        p_value=p_value,
        log_likelihoods=(fit_a.log_likelihood, fit_b.log_likelihood),
        method=fit_a.method,
    )
