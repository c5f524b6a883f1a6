"""
pgls: phylogenetic generalized least squares.

Build a phylogenetic covariance matrix from a tree, pick a residual
correlation structure (Brownian, Pagel's lambda, Ornstein-Uhlenbeck) and fit
regressions of trait data that account for shared evolutionary history.
"""

from .analysis.comparative_methods import ModelComparison, ModelSpec, Predictor, build_design, compare_models, pgls
from .analysis.covariance import correlation_from_vcv, patristic_distances, rescale_correlation, vcv
from .core.config import DefaultConfig, load_config
from .core.data_loader import DataLoader, align_tree_and_table
from .core.exceptions import (
    ComparisonError,
    ConfigError,
    ConvergenceError,
    ConvergenceWarning,
    IdentifierMismatchError,
    IdentifierMismatchWarning,
    IllDefinedCorrelationError,
    InvalidParameterError,
    MalformedTreeError,
    ModelSpecificationError,
    NonUltrametricTreeError,
    PGLSError,
    RankDeficientDesignError,
    SingularCovarianceError,
)
from .core.framework import PGLSFramework
from .core.pipeline import Pipeline
from .core.tree import PhyloTree
from .methods.correlation import (
    Brownian,
    Independence,
    OrnsteinUhlenbeck,
    Pagel,
    correlation_from_name,
    pagel_transform,
)
from .methods.gls import FitResult, fit_gls, gls

__version__ = "0.1.0"
