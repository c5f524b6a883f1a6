"""
Residual correlation structures for phylogenetic regression.

The set of structures is closed: Independence, Brownian, Pagel (lambda) and
OrnsteinUhlenbeck (alpha). They share no base class; each is a frozen
dataclass satisfying the CorrelationStructure protocol, whose ``builder``
turns a tree into a pure function ``value -> correlation matrix``. Base
matrices are computed once per builder, so an optimiser can call the
function many times cheaply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, ClassVar, Optional, Protocol, Tuple, runtime_checkable

import numpy as np
import pandas as pd

from ..analysis.covariance import correlation_from_vcv, patristic_distances, vcv
from ..core.config import DefaultConfig
from ..core.exceptions import InvalidParameterError

logger = logging.getLogger(__name__)

MatrixBuilder = Callable[[Optional[float]], np.ndarray]


@runtime_checkable
class CorrelationStructure(Protocol):
    """Capabilities every correlation structure provides."""

    name: str
    parameter_name: Optional[str]

    @property
    def value(self) -> Optional[float]: ...

    @property
    def is_estimated(self) -> bool: ...

    def bounds(self, config=None) -> Optional[Tuple[float, float]]: ...

    def builder(self, tree, config=None) -> MatrixBuilder: ...


def pagel_transform(corr, lam, allow_above_one=False, upper=1.0):
    """
    Scales the off-diagonal (shared-history) entries of a correlation matrix by lambda.

    lambda = 0 gives the identity (independent residuals), lambda = 1 returns the
    matrix unchanged.

    Args:
        corr: Correlation (or covariance) matrix; its diagonal is kept as is.
        lam (float): Pagel's lambda.
        allow_above_one (bool): Accept values above 1, up to ``upper``.
        upper (float): Largest accepted value when ``allow_above_one`` is set.

    Returns:
        Transformed matrix, of the same type as ``corr``.

    Raises:
        InvalidParameterError: If lambda is negative, not finite, or above the permitted range.
    """
    if lam is None:
        raise InvalidParameterError("Pagel's lambda has no value; fix it or let it be estimated")
    lam = float(lam)
    if not np.isfinite(lam) or lam < 0:
        raise InvalidParameterError(f"Pagel's lambda must be a finite value >= 0, got {lam}")
    if lam > 1.0:
        if not allow_above_one:
            raise InvalidParameterError(
                f"Pagel's lambda must lie in [0, 1], got {lam}; "
                "set allow_lambda_above_one to permit larger values"
            )
        if lam > upper:
            raise InvalidParameterError(f"Pagel's lambda {lam} exceeds the configured upper bound {upper}")

    values = np.asarray(corr, dtype=float)
    result = values * lam
    np.fill_diagonal(result, np.diag(values))
    if isinstance(corr, pd.DataFrame):
        return pd.DataFrame(result, index=corr.index, columns=corr.columns)
    return result


def _brownian_correlation(tree, config) -> np.ndarray:
    corr = correlation_from_vcv(
        vcv(tree),
        normalization=config.normalization,
        tolerance=config.ultrametric_tolerance,
    )
    return corr.to_numpy()


@dataclass(frozen=True)
class Independence:
    """Uncorrelated residuals; GLS reduces to ordinary least squares."""

    name: ClassVar[str] = "independence"
    parameter_name: ClassVar[Optional[str]] = None

    @property
    def value(self):
        return None

    @property
    def is_estimated(self):
        return False

    def bounds(self, config=None):
        return None

    def builder(self, tree, config=None) -> MatrixBuilder:
        n = tree.n_tips

        def build(value=None):
            return np.eye(n)

        return build


@dataclass(frozen=True)
class Brownian:
    """Brownian-motion correlation: shared branch length over tree height."""

    name: ClassVar[str] = "brownian"
    parameter_name: ClassVar[Optional[str]] = None

    @property
    def value(self):
        return None

    @property
    def is_estimated(self):
        return False

    def bounds(self, config=None):
        return None

    def builder(self, tree, config=None) -> MatrixBuilder:
        base = _brownian_correlation(tree, config or DefaultConfig())

        def build(value=None):
            return base.copy()

        return build


@dataclass(frozen=True)
class Pagel:
    """
    Brownian correlation with off-diagonals scaled by Pagel's lambda.

    Args:
        lam (float, optional): Fixed lambda. None means lambda is estimated by maximum likelihood.
    """

    lam: Optional[float] = None

    name: ClassVar[str] = "pagel"
    parameter_name: ClassVar[Optional[str]] = "lambda"

    def __post_init__(self):
        if self.lam is not None and not float(self.lam) >= 0:
            raise InvalidParameterError(f"Pagel's lambda must be >= 0, got {self.lam}")

    @property
    def value(self):
        return self.lam

    @property
    def is_estimated(self):
        return self.lam is None

    def bounds(self, config=None):
        config = config or DefaultConfig()
        lower, upper = (float(v) for v in config.lambda_bounds)
        if lower < 0 or upper < lower:
            raise InvalidParameterError(f"Invalid lambda bounds {config.lambda_bounds}")
        if upper > 1.0 and not config.allow_lambda_above_one:
            raise InvalidParameterError(
                f"lambda_bounds upper limit {upper} exceeds 1 but allow_lambda_above_one is off"
            )
        return lower, upper

    def builder(self, tree, config=None) -> MatrixBuilder:
        config = config or DefaultConfig()
        base = _brownian_correlation(tree, config)
        upper = max(1.0, float(config.lambda_bounds[1]))
        allow = bool(config.allow_lambda_above_one)

        def build(value=None):
            lam = self.lam if value is None else value
            return pagel_transform(base, lam, allow_above_one=allow, upper=upper)

        return build


@dataclass(frozen=True)
class OrnsteinUhlenbeck:
    """
    Ornstein-Uhlenbeck correlation (Martins & Hansen): exp(-alpha * d_ij), d the patristic distance.

    Args:
        alpha (float, optional): Fixed strength of attraction. None means alpha is estimated.
    """

    alpha: Optional[float] = None

    name: ClassVar[str] = "ou"
    parameter_name: ClassVar[Optional[str]] = "alpha"

    def __post_init__(self):
        if self.alpha is not None and not float(self.alpha) > 0:
            raise InvalidParameterError(f"OU alpha must be > 0, got {self.alpha}")

    @property
    def value(self):
        return self.alpha

    @property
    def is_estimated(self):
        return self.alpha is None

    def bounds(self, config=None):
        config = config or DefaultConfig()
        lower, upper = (float(v) for v in config.ou_alpha_bounds)
        if lower <= 0 or upper <= lower:
            raise InvalidParameterError(f"Invalid OU alpha bounds {config.ou_alpha_bounds}")
        return lower, upper

    def builder(self, tree, config=None) -> MatrixBuilder:
        distances = patristic_distances(vcv(tree)).to_numpy()

        def build(value=None):
            alpha = self.alpha if value is None else value
            if alpha is None:
                raise InvalidParameterError("OU alpha has no value; fix it or let it be estimated")
            alpha = float(alpha)
            if not np.isfinite(alpha) or alpha <= 0:
                raise InvalidParameterError(f"OU alpha must be a finite value > 0, got {alpha}")
            return np.exp(-alpha * distances)

        return build


_MODELS = {
    "independence": Independence,
    "ols": Independence,
    "brownian": Brownian,
    "bm": Brownian,
    "pagel": Pagel,
    "lambda": Pagel,
    "ou": OrnsteinUhlenbeck,
    "martins": OrnsteinUhlenbeck,
}

CORRELATION_MODELS = ("independence", "brownian", "pagel", "ou")


def correlation_from_name(name, value=None):
    """
    Resolves a correlation structure from its name.

    Args:
        name (str): 'independence', 'brownian' ('bm'), 'pagel' ('lambda') or 'ou' ('martins').
        value (float, optional): Fixed shape parameter for 'pagel' or 'ou'.

    Returns:
        A correlation structure instance.

    Raises:
        ValueError: If the name is unknown.
        InvalidParameterError: If a value is given for a structure without a parameter.
    """
    try:
        cls = _MODELS[str(name).lower()]
    except KeyError:
        raise ValueError(
            f"Unknown correlation model {name!r}; expected one of {CORRELATION_MODELS}"
        ) from None
    if cls in (Independence, Brownian):
        if value is not None:
            raise InvalidParameterError(f"The {cls.name} correlation takes no parameter")
        return cls()
    return cls(value)
