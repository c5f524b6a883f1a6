import logging

from ..analysis.comparative_methods import compare_models, pgls
from ..methods.correlation import correlation_from_name
from .config import DefaultConfig

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Orchestrates the PGLS workflow: alignment, design matrix, correlation structure and fit.

    Each fit is stored under a label and never modified, so several models can
    be fitted on the same data and compared afterwards.
    """
    def __init__(self, config=None):
        """
        Initializes the Pipeline with a configuration object.

        Args:
            config: A configuration object. If None, DefaultConfig is used.
                    Supplies the default correlation model, estimation method,
                    tolerances and optimiser settings.
        """
        self.config = config if config is not None else DefaultConfig()
        self.results = {}
        logger.debug("Pipeline initialized with config: %s", type(self.config).__name__)

    def default_correlation(self):
        """The correlation structure named by ``config.correlation_model``."""
        return correlation_from_name(self.config.correlation_model)

    def run_analysis(self, data, spec, correlation=None, method=None, label=None):
        """
        Fits one model and stores the result.

        Args:
            data (tuple): (PhyloTree, pandas.DataFrame) tree and trait table.
            spec (ModelSpec): The model to fit.
            correlation: Correlation structure. Defaults to ``config.correlation_model``.
            method (str): 'REML' or 'ML'. Defaults to ``config.estimation_method``.
            label (str): Key under which the result is stored. Defaults to a
                         description of the model.

        Returns:
            FitResult: The fitted model.

        Raises:
            ValueError: If ``data`` is not a (tree, table) pair, or the label is already used.
        """
        try:
            tree, table = data
        except (TypeError, ValueError):
            raise ValueError("data must be a (tree, table) pair") from None

        correlation = correlation if correlation is not None else self.default_correlation()
        method = method or self.config.estimation_method
        label = label or f"{spec.describe()} [{correlation.name}, {str(method).upper()}]"
        if label in self.results:
            raise ValueError(f"A fit labelled {label!r} already exists")

        result = pgls(tree, table, spec, correlation=correlation, method=method, config=self.config)
        self.results[label] = result
        logger.info("Stored fit %r (log-likelihood %.4f)", label, result.log_likelihood)
        return result

    def compare(self, label_a, label_b):
        """
        Likelihood-ratio test between two stored fits.

        Raises:
            KeyError: If a label is unknown.
            ComparisonError: See :func:`compare_models`.
        """
        for label in (label_a, label_b):
            if label not in self.results:
                raise KeyError(f"No fit labelled {label!r}; available: {list(self.results)}")
        return compare_models(self.results[label_a], self.results[label_b])
