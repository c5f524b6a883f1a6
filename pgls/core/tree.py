"""
Immutable rooted phylogeny used by the covariance builder.

Nodes are stored in preorder (the root first, every parent before its
children), so root distances and subtree tip sets come from a single pass
over flat arrays.
"""

from __future__ import annotations

import io
import math
from collections import defaultdict
from functools import cached_property

import numpy as np
import pandas as pd
from Bio import Phylo
from Bio.Phylo.NewickIO import NewickError

from .exceptions import MalformedTreeError

# sqrt of double-precision machine epsilon, relative to the tree height
DEFAULT_ULTRAMETRIC_TOLERANCE = 1.4901161193847656e-08


def _check_length(value, node) -> float:
    if value is None:
        raise MalformedTreeError(f"Branch leading to {node!r} has no length")
    try:
        length = float(value)
    except (TypeError, ValueError):
        raise MalformedTreeError(f"Branch leading to {node!r} has a non-numeric length: {value!r}") from None
    if not math.isfinite(length) or length < 0:
        raise MalformedTreeError(f"Branch leading to {node!r} has an invalid length: {length}")
    return length


class PhyloTree:
    """
    A rooted tree with non-negative branch lengths and uniquely named tips.

    Instances are never modified after construction; pruning returns a new tree.
    Use one of the ``from_*`` constructors rather than calling ``__init__`` directly.

    Args:
        parents: Parent index of every node in preorder; -1 for the root.
        lengths: Length of the branch above every node (ignored for the root).
        labels: Node labels; tips must carry a unique, non-empty label.
        root_length: Stem length above the root. Only used when the root is the
                     single tip of the tree.

    Raises:
        MalformedTreeError: If the arrays do not describe a preorder tree or tip labels are invalid.
    """

    def __init__(self, parents, lengths, labels, root_length=0.0):
        parents = np.array(parents, dtype=np.intp)
        lengths = np.array(lengths, dtype=float)
        labels = tuple(labels)

        n = len(parents)
        if n == 0:
            raise MalformedTreeError("Tree has no nodes")
        if len(lengths) != n or len(labels) != n:
            raise MalformedTreeError(
                f"parents, lengths and labels disagree in size ({n}, {len(lengths)}, {len(labels)})"
            )
        if parents[0] != -1:
            raise MalformedTreeError("The first node must be the root (parent -1)")
        for i in range(1, n):
            if not 0 <= parents[i] < i:
                raise MalformedTreeError(
                    f"Node {i} has parent {parents[i]}; nodes must be in preorder with a single root"
                )
        for i in range(1, n):
            _check_length(lengths[i], labels[i] if labels[i] else f"node {i}")

        children = [[] for _ in range(n)]
        for i in range(1, n):
            children[parents[i]].append(i)

        tip_nodes = [i for i in range(n) if not children[i]]
        tip_labels = []
        seen = set()
        for i in tip_nodes:
            label = labels[i]
            if label is None or str(label).strip() == "":
                raise MalformedTreeError(f"Tip node {i} has no label")
            label = str(label)
            if label in seen:
                raise MalformedTreeError(f"Duplicate tip label {label!r}")
            seen.add(label)
            tip_labels.append(label)

        self._parents = parents
        self._lengths = lengths
        self._parents.flags.writeable = False
        self._lengths.flags.writeable = False
        self._labels = labels
        self._children = tuple(tuple(c) for c in children)
        self._tip_nodes = np.asarray(tip_nodes, dtype=np.intp)
        self._tip_nodes.flags.writeable = False
        self._tip_labels = tuple(tip_labels)
        self._root_length = _check_length(root_length, "the root") if n == 1 else float(root_length or 0.0)

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def from_edges(cls, edges, root_length=0.0) -> "PhyloTree":
        """
        Builds a tree from ``(parent, child, length)`` triples.

        Node identifiers may be any hashable; tips are the nodes without
        children and are labelled with ``str(identifier)``.

        Args:
            edges: Iterable of (parent, child, length) triples.
            root_length (float): Stem length above the root.

        Returns:
            PhyloTree: The validated tree.

        Raises:
            MalformedTreeError: On multiple parents, cycles, several roots,
                                missing or negative lengths.
        """
        parent_of = {}
        length_of = {}
        children_of = defaultdict(list)
        nodes = []
        seen = set()

        for edge in edges:
            try:
                parent, child, length = edge
            except (TypeError, ValueError):
                raise MalformedTreeError(f"Edge {edge!r} is not a (parent, child, length) triple") from None
            if parent == child:
                raise MalformedTreeError(f"Node {child!r} is its own parent")
            for node in (parent, child):
                if node not in seen:
                    seen.add(node)
                    nodes.append(node)
            if child in parent_of:
                raise MalformedTreeError(
                    f"Node {child!r} has more than one parent ({parent_of[child]!r} and {parent!r})"
                )
            parent_of[child] = parent
            length_of[child] = _check_length(length, child)
            children_of[parent].append(child)

        if not nodes:
            raise MalformedTreeError("Tree has no edges")

        roots = [node for node in nodes if node not in parent_of]
        if not roots:
            raise MalformedTreeError("Tree has no root: the edges form a cycle")
        if len(roots) > 1:
            raise MalformedTreeError(
                f"Tree has {len(roots)} roots ({', '.join(map(repr, roots))}); "
                "input must be a single connected tree"
            )

        order = []
        index_of = {}
        stack = [roots[0]]
        while stack:
            node = stack.pop()
            index_of[node] = len(order)
            order.append(node)
            stack.extend(reversed(children_of.get(node, ())))

        if len(order) != len(nodes):
            unreachable = [node for node in nodes if node not in index_of]
            raise MalformedTreeError(
                f"Nodes {unreachable!r} are not reachable from root {roots[0]!r}: the edges contain a cycle"
            )

        parents = [-1] + [index_of[parent_of[node]] for node in order[1:]]
        lengths = [0.0] + [length_of[node] for node in order[1:]]
        labels = [str(node) for node in order]
        return cls(parents, lengths, labels, root_length=root_length)

    @classmethod
    def from_phylo(cls, tree) -> "PhyloTree":
        """
        Converts a Bio.Phylo tree (or clade) into a PhyloTree.

        Args:
            tree: A ``Bio.Phylo.BaseTree.Tree`` or ``Clade``.

        Returns:
            PhyloTree: The converted tree.

        Raises:
            MalformedTreeError: If a branch has no length or tip names are missing or duplicated.
        """
        root = getattr(tree, "root", tree)
        parents, lengths, labels = [], [], []
        stack = [(root, -1)]
        while stack:
            clade, parent = stack.pop()
            index = len(parents)
            name = clade.name
            if parent == -1:
                length = 0.0
            else:
                length = _check_length(clade.branch_length, name or f"clade #{index}")
            parents.append(parent)
            lengths.append(length)
            labels.append(name)
            stack.extend((child, index) for child in reversed(clade.clades))

        if root.clades:
            root_length = root.branch_length or 0.0
        else:
            root_length = _check_length(root.branch_length, root.name)
        return cls(parents, lengths, labels, root_length=root_length)

    @classmethod
    def from_newick(cls, text: str) -> "PhyloTree":
        """Parses a Newick string."""
        try:
            phylo_tree = Phylo.read(io.StringIO(text.strip()), "newick")
        except (NewickError, ValueError) as e:
            raise MalformedTreeError(f"Cannot parse Newick string: {e}") from e
        return cls.from_phylo(phylo_tree)

    # ------------------------------------------------------------------ #
    # Structure
    # ------------------------------------------------------------------ #

    @property
    def n_nodes(self) -> int:
        return len(self._parents)

    @property
    def n_tips(self) -> int:
        return len(self._tip_labels)

    def __len__(self):
        return self.n_tips

    @property
    def tip_labels(self) -> tuple:
        return self._tip_labels

    @property
    def tip_nodes(self) -> np.ndarray:
        return self._tip_nodes

    @property
    def parents(self) -> np.ndarray:
        return self._parents

    @property
    def lengths(self) -> np.ndarray:
        return self._lengths

    @property
    def labels(self) -> tuple:
        return self._labels

    @property
    def children(self) -> tuple:
        return self._children

    @property
    def root_length(self) -> float:
        return self._root_length

    def is_tip(self, node: int) -> bool:
        return not self._children[node]

    def __repr__(self):
        return f"PhyloTree(n_tips={self.n_tips}, n_nodes={self.n_nodes}, height={self.height:.6g})"

    # ------------------------------------------------------------------ #
    # Distances
    # ------------------------------------------------------------------ #

    @cached_property
    def _root_distances(self) -> np.ndarray:
        dist = np.zeros(self.n_nodes)
        for i in range(1, self.n_nodes):
            dist[i] = dist[self._parents[i]] + self._lengths[i]
        if self.n_nodes == 1:
            dist[0] = self._root_length
        dist.flags.writeable = False
        return dist

    def root_distances(self) -> np.ndarray:
        """Distance from the root to every node, in preorder."""
        return self._root_distances.copy()

    def tip_heights(self) -> pd.Series:
        """Root-to-tip distance of every tip, indexed by tip label."""
        return pd.Series(self._root_distances[self._tip_nodes], index=list(self._tip_labels), name="height")

    @property
    def height(self) -> float:
        """Largest root-to-tip distance."""
        return float(self._root_distances[self._tip_nodes].max())

    def is_ultrametric(self, tolerance=DEFAULT_ULTRAMETRIC_TOLERANCE) -> bool:
        """
        Whether all tips are equidistant from the root.

        Args:
            tolerance (float): Allowed spread of tip heights, relative to the tree height.
        """
        heights = self._root_distances[self._tip_nodes]
        top = heights.max()
        if top == 0:
            return True
        return bool(heights.max() - heights.min() <= tolerance * top)

    @cached_property
    def _descendant_tips(self):
        position = {node: k for k, node in enumerate(self._tip_nodes)}
        result = [None] * self.n_nodes
        for i in range(self.n_nodes - 1, -1, -1):
            if not self._children[i]:
                result[i] = np.array([position[i]], dtype=np.intp)
            else:
                result[i] = np.concatenate([result[c] for c in self._children[i]])
        return tuple(result)

    def descendant_tips(self):
        """Positions (into ``tip_labels``) of the tips below each node, in preorder."""
        return self._descendant_tips

    # ------------------------------------------------------------------ #
    # Pruning
    # ------------------------------------------------------------------ #

    def keep_tips(self, labels) -> "PhyloTree":
        """
        Returns the subtree spanned by the given tips.

        Interior nodes left with a single child are collapsed into one branch
        whose length is the sum of the merged branches; a root left with a
        single child is dropped together with its stem.

        Args:
            labels: Tip labels to retain.

        Returns:
            PhyloTree: The pruned tree (tips keep their original left-to-right order).

        Raises:
            KeyError: If a label is not a tip of this tree.
            MalformedTreeError: If no tips are retained.
        """
        keep = set(map(str, labels))
        unknown = keep.difference(self._tip_labels)
        if unknown:
            raise KeyError(f"Not tips of this tree: {sorted(unknown)}")
        if not keep:
            raise MalformedTreeError("Cannot prune a tree down to zero tips")

        kept = np.zeros(self.n_nodes, dtype=bool)
        for node, label in zip(self._tip_nodes, self._tip_labels):
            kept[node] = label in keep
        for i in range(self.n_nodes - 1, -1, -1):
            if self._children[i]:
                kept[i] = any(kept[c] for c in self._children[i])

        def kept_children(node):
            return [c for c in self._children[node] if kept[c]]

        root = 0
        while self._children[root] and len(kept_children(root)) == 1:
            root = kept_children(root)[0]

        parents, lengths, labels_out = [], [], []
        stack = [(root, -1, 0.0)]
        while stack:
            node, parent, length = stack.pop()
            below = kept_children(node)
            if parent != -1 and len(below) == 1:
                child = below[0]
                stack.append((child, parent, length + self._lengths[child]))
                continue
            index = len(parents)
            parents.append(parent)
            lengths.append(length)
            labels_out.append(self._labels[node])
            stack.extend((c, index, self._lengths[c]) for c in reversed(below))

        root_length = self._root_distances[root] if not self._children[root] else 0.0
        return PhyloTree(parents, lengths, labels_out, root_length=root_length)
