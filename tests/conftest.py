import os

import numpy as np
import pytest

from pgls.core.tree import PhyloTree

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXAMPLES_DIR = os.path.join(BASE_DIR, "examples")


def random_tree(n_tips, rng, ultrametric=True):
    """
    Random coalescent-style tree built by joining random pairs at increasing heights.

    With ``ultrametric=False`` every terminal branch gets a random extra length.
    """
    clusters = [(f"t{i}", 0.0) for i in range(n_tips)]
    edges = []
    height = 0.0
    k = 0
    while len(clusters) > 1:
        height += rng.exponential(1.0)
        i, j = sorted(rng.choice(len(clusters), size=2, replace=False), reverse=True)
        first = clusters.pop(i)
        second = clusters.pop(j)
        parent = f"n{k}"
        k += 1
        for child, child_height in (first, second):
            edges.append((parent, child, height - child_height))
        clusters.append((parent, height))
    if not ultrametric:
        edges = [
            (p, c, length + rng.uniform(0.05, 0.5)) if c.startswith("t") else (p, c, length)
            for p, c, length in edges
        ]
    return PhyloTree.from_edges(edges)


@pytest.fixture
def rng():
    return np.random.default_rng(20240517)


@pytest.fixture
def tree_factory(rng):
    def make(n_tips=12, ultrametric=True):
        return random_tree(n_tips, rng, ultrametric=ultrametric)
    return make


@pytest.fixture
def example_tree_path():
    return os.path.join(EXAMPLES_DIR, "example_tree.nwk")


@pytest.fixture
def example_traits_path():
    return os.path.join(EXAMPLES_DIR, "example_traits.csv")
