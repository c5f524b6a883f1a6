import logging
import warnings
from dataclasses import dataclass

import pandas as pd
from Bio import Phylo
from Bio.Nexus.Nexus import NexusError
from Bio.Phylo.NewickIO import NewickError

from .config import DefaultConfig
from .exceptions import IdentifierMismatchError, IdentifierMismatchWarning, MalformedTreeError
from .logging_utils import log_dropped_identifiers
from .tree import PhyloTree

logger = logging.getLogger(__name__)

TREE_FORMATS = ('newick', 'nexus')


@dataclass(frozen=True)
class IdentifierReport:
    """Outcome of matching tree tips against trait-table identifiers."""
    common: tuple
    missing_from_table: tuple
    missing_from_tree: tuple

    @property
    def matches(self) -> bool:
        return not self.missing_from_table and not self.missing_from_tree


def _table_ids(table):
    ids = [str(i) for i in table.index]
    seen, duplicates = set(), []
    for i in ids:
        if i in seen:
            duplicates.append(i)
        seen.add(i)
    if duplicates:
        raise ValueError(f"Duplicate identifiers in trait table: {sorted(set(duplicates))}")
    return ids


def match_identifiers(tree, table) -> IdentifierReport:
    """
    Compares the tree's tip labels with the table's index.

    Args:
        tree (PhyloTree): The tree.
        table (pandas.DataFrame): Trait table indexed by identifier.

    Returns:
        IdentifierReport: Shared identifiers in tree order, and those present on one side only.
    """
    tips = list(tree.tip_labels)
    ids = _table_ids(table)
    in_table, in_tree = set(ids), set(tips)
    return IdentifierReport(
        common=tuple(t for t in tips if t in in_table),
        missing_from_table=tuple(t for t in tips if t not in in_table),
        missing_from_tree=tuple(i for i in ids if i not in in_tree),
    )


def align_tree_and_table(tree, table):
    """
    Restricts a tree and a trait table to their shared identifiers.

    Tips without a table row are pruned from the tree and rows without a tip
    are dropped from the table; both are reported through an
    IdentifierMismatchWarning and the log, since filtering is expected. The
    returned table is ordered like the tree's tips.

    Args:
        tree (PhyloTree): The tree.
        table (pandas.DataFrame): Trait table indexed by identifier.

    Returns:
        tuple: (PhyloTree, pandas.DataFrame) restricted to the common identifiers.

    Raises:
        IdentifierMismatchError: If the tree and the table share no identifier.
        ValueError: If the table index holds duplicate identifiers.
    """
    report = match_identifiers(tree, table)
    if not report.common:
        raise IdentifierMismatchError(
            f"Tree ({tree.n_tips} tips) and trait table ({len(table)} rows) share no identifiers"
        )

    if not report.matches:
        log_dropped_identifiers(report.missing_from_table, report.missing_from_tree, logger)
        warnings.warn(
            f"Dropped {len(report.missing_from_table)} tip(s) without data and "
            f"{len(report.missing_from_tree)} row(s) without a tip; "
            f"{len(report.common)} species remain",
            IdentifierMismatchWarning,
            stacklevel=2,
        )

    pruned = tree.keep_tips(report.common) if report.missing_from_table else tree
    aligned = table.copy()
    aligned.index = pd.Index([str(i) for i in aligned.index], name=table.index.name)
    aligned = aligned.loc[list(report.common)]
    return pruned, aligned


class DataLoader:
    """
    Handles loading and validation of phylogenetic trees and trait tables.

    Every method takes explicit paths or open streams; nothing depends on the
    current working directory.
    """
    def __init__(self, config=None):
        """
        Initializes the DataLoader with a configuration object.

        Args:
            config: A configuration object. If None, DefaultConfig is used.
        """
        self.config = config if config is not None else DefaultConfig()
        self.tree = None
        self.table = None

    def load_tree(self, source, tree_format: str = None) -> PhyloTree:
        """
        Loads a phylogenetic tree from a file path or text stream.

        Args:
            source: Path or open handle of a file holding exactly one tree.
            tree_format (str): 'newick' or 'nexus'. Defaults to ``config.tree_format``.

        Returns:
            PhyloTree: The parsed tree, also stored as ``self.tree``.

        Raises:
            FileNotFoundError: If the tree file does not exist.
            ValueError: If the tree format is unsupported.
            MalformedTreeError: If the file cannot be parsed or the tree is invalid.
        """
        tree_format = (tree_format or self.config.tree_format).lower()
        if tree_format not in TREE_FORMATS:
            raise ValueError(f"Unsupported tree format {tree_format!r}; expected one of {TREE_FORMATS}")

        try:
            phylo_tree = Phylo.read(source, tree_format)
        except (NewickError, NexusError, ValueError) as e:
            raise MalformedTreeError(f"Cannot read {tree_format} tree from {source!r}: {e}") from e

        self.tree = PhyloTree.from_phylo(phylo_tree)
        logger.info("Loaded tree with %d tips from %s", self.tree.n_tips, source)
        return self.tree

    def load_trait_table(self, source, id_column: str = None, sep: str = None, **kwargs) -> pd.DataFrame:
        """
        Loads a delimited trait table with one row per species.

        Args:
            source: Path or open handle of the table.
            id_column (str): Column holding the tip identifiers. Defaults to ``config.id_column``.
            sep (str): Field separator. Defaults to ``config.separator``.
            **kwargs: Passed on to ``pandas.read_csv``.

        Returns:
            pandas.DataFrame: Table indexed by identifier (as strings), also stored as ``self.table``.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the identifier column is missing or holds duplicates.
        """
        id_column = id_column or self.config.id_column
        sep = sep or self.config.separator
        table = pd.read_csv(source, sep=sep, **kwargs)

        if id_column not in table.columns:
            raise ValueError(
                f"Identifier column {id_column!r} not found in trait table; columns are {list(table.columns)}"
            )
        ids = table[id_column].astype(str).str.strip()
        table = table.drop(columns=id_column)
        table.index = pd.Index(ids, name=id_column)
        _table_ids(table)

        self.table = table
        logger.info("Loaded trait table with %d rows and %d columns", len(table), table.shape[1])
        return table

    def validate_data(self, tree=None, table=None) -> IdentifierReport:
        """
        Checks identifier consistency between the tree and the trait table.

        Mismatches are reported, not fatal: they are removed by :meth:`align`.

        Args:
            tree: Tree to validate. If None, uses self.tree.
            table: Trait table to validate. If None, uses self.table.

        Returns:
            IdentifierReport

        Raises:
            ValueError: If tree or table have not been loaded yet.
        """
        tree = tree if tree is not None else self.tree
        table = table if table is not None else self.table
        if tree is None or table is None:
            raise ValueError("Tree and/or trait table have not been loaded yet.")

        report = match_identifiers(tree, table)
        if report.missing_from_table:
            logger.info("Taxa in tree but not in trait table: %s", ", ".join(report.missing_from_table))
        if report.missing_from_tree:
            logger.info("Taxa in trait table but not in tree: %s", ", ".join(report.missing_from_tree))
        return report

    def align(self, tree=None, table=None):
        """Aligns the given (or loaded) tree and table; see :func:`align_tree_and_table`."""
        tree = tree if tree is not None else self.tree
        table = table if table is not None else self.table
        if tree is None or table is None:
            raise ValueError("Tree and/or trait table have not been loaded yet.")
        return align_tree_and_table(tree, table)
