import logging

from ..analysis.comparative_methods import select_complete_rows
from .config import DefaultConfig
from .data_loader import DataLoader
from .logging_utils import configure_logging
from .pipeline import Pipeline

logger = logging.getLogger(__name__)


class PGLSFramework:
    """
    Main entry point and orchestrator for phylogenetic regression analyses.
    This class integrates data loading, model fitting and model comparison.
    """
    def __init__(self, config=None, setup_logging=False):
        """
        Initializes the PGLSFramework.

        Args:
            config: A configuration object. If None, DefaultConfig is used.
                    This config object is passed down to DataLoader and Pipeline.
            setup_logging (bool): Configure the package logger from ``config.log_level``.
        """
        self.config = config or DefaultConfig()
        if setup_logging:
            configure_logging(self.config.log_level)
        self.data_loader = DataLoader(self.config)
        self.pipeline = Pipeline(self.config)

        self.tree = None
        self.table = None

    def load_data(self, tree_file, data_file, tree_format: str = None, id_column: str = None, **kwargs):
        """
        Loads the tree and trait table once and reports identifier mismatches.

        Args:
            tree_file: Path or handle of the tree file.
            data_file: Path or handle of the trait table.
            tree_format (str): 'newick' or 'nexus'. Defaults to ``config.tree_format``.
            id_column (str): Identifier column of the table. Defaults to ``config.id_column``.
            **kwargs: Additional keyword arguments for ``pandas.read_csv``.

        Returns:
            IdentifierReport: How the tree tips and table rows match up.
        """
        self.tree = self.data_loader.load_tree(tree_file, tree_format=tree_format)
        self.table = self.data_loader.load_trait_table(data_file, id_column=id_column, **kwargs)
        return self.data_loader.validate_data(self.tree, self.table)

    def fit(self, spec, correlation=None, method=None, label=None, rows_of=None):
        """
        Fits a model on the loaded data; see :meth:`Pipeline.run_analysis`.

        Args:
            rows_of (ModelSpec, optional): Also drop rows with missing values in this
                                           model's columns, so that a reduced model is
                                           fitted on the same species as the full one.

        Raises:
            ValueError: If no data has been loaded.
        """
        if self.tree is None or self.table is None:
            raise ValueError("Tree and/or trait table have not been loaded. Call load_data first.")
        table = self.table
        if rows_of is not None:
            table = table.loc[select_complete_rows(table, rows_of).index]
        return self.pipeline.run_analysis((self.tree, table), spec, correlation, method, label)

    def compare(self, label_a, label_b):
        """Likelihood-ratio test between two fits stored under the given labels."""
        return self.pipeline.compare(label_a, label_b)

    def summary(self, label):
        """Printable summary of a stored fit."""
        try:
            return self.pipeline.results[label].summary()
        except KeyError:
            raise KeyError(f"No fit labelled {label!r}; available: {list(self.pipeline.results)}") from None

    @property
    def results(self):
        return self.pipeline.results
