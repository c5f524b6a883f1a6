import numpy as np
import pandas as pd
import pytest

from pgls.analysis.covariance import correlation_from_vcv, patristic_distances, rescale_correlation, vcv
from pgls.core.exceptions import IllDefinedCorrelationError, NonUltrametricTreeError
from pgls.core.tree import PhyloTree

WORKED_EXAMPLE = "(((a:0.15,b:0.15):0.4,c:0.55):0.5,(d:0.25,e:0.25):0.8);"


def naive_vcv(tree):
    """Shared path lengths from explicit ancestor sets."""
    dist = tree.root_distances()

    def ancestors(node):
        path = set()
        while node != -1:
            path.add(node)
            node = tree.parents[node]
        return path

    tips = list(tree.tip_nodes)
    paths = [ancestors(t) for t in tips]
    n = len(tips)
    out = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            out[i, j] = max(dist[k] for k in paths[i] & paths[j])
    return out


class TestVCV:
    """
    Tests for the phylogenetic variance-covariance matrix.
    """
    def setup_method(self, method):
        self.tree = PhyloTree.from_newick(WORKED_EXAMPLE)

    def test_worked_example(self):
        expected = np.array([
            [1.05, 0.90, 0.50, 0.00, 0.00],
            [0.90, 1.05, 0.50, 0.00, 0.00],
            [0.50, 0.50, 1.05, 0.00, 0.00],
            [0.00, 0.00, 0.00, 1.05, 0.80],
            [0.00, 0.00, 0.00, 0.80, 1.05],
        ])
        cov = vcv(self.tree)
        assert list(cov.index) == ["a", "b", "c", "d", "e"]
        assert list(cov.columns) == ["a", "b", "c", "d", "e"]
        np.testing.assert_allclose(cov.to_numpy(), expected)

    def test_worked_example_correlation(self):
        corr = correlation_from_vcv(vcv(self.tree))
        assert corr.loc["a", "b"] == pytest.approx(0.9 / 1.05)
        assert corr.loc["a", "d"] == 0.0
        np.testing.assert_allclose(np.diag(corr.to_numpy()), 1.0)

    def test_matches_ancestor_set_computation(self, tree_factory):
        for _ in range(5):
            tree = tree_factory(n_tips=9, ultrametric=False)
            np.testing.assert_allclose(vcv(tree).to_numpy(), naive_vcv(tree))

    def test_symmetric_positive_semidefinite(self, tree_factory):
        for _ in range(5):
            cov = vcv(tree_factory(n_tips=15)).to_numpy()
            np.testing.assert_allclose(cov, cov.T)
            assert np.linalg.eigvalsh(cov).min() >= -1e-10

    def test_ultrametric_diagonal_is_height(self, tree_factory):
        tree = tree_factory(n_tips=20)
        np.testing.assert_allclose(np.diag(vcv(tree).to_numpy()), tree.height)

    def test_multifurcation(self):
        cov = vcv(PhyloTree.from_newick("((a:1,b:1,c:1):1,d:2);"))
        np.testing.assert_allclose(cov.loc[["a", "b", "c"], ["a", "b", "c"]].to_numpy(),
                                   [[2, 1, 1], [1, 2, 1], [1, 1, 2]])
        assert (cov.loc["d", ["a", "b", "c"]] == 0).all()

    def test_single_tip(self):
        cov = vcv(PhyloTree.from_edges([("r", "only", 2.5)]))
        assert cov.shape == (1, 1)
        assert cov.iloc[0, 0] == pytest.approx(2.5)

    def test_zero_length_terminal_branches(self):
        cov = vcv(PhyloTree.from_newick("((a:0,b:0):1,c:1);"))
        assert cov.loc["a", "b"] == pytest.approx(1.0)
        assert cov.loc["a", "a"] == pytest.approx(1.0)


class TestCorrelationFromVCV:
    """
    Tests for normalising covariance matrices to correlations.
    """
    def test_non_ultrametric_height_normalisation(self):
        cov = vcv(PhyloTree.from_newick("((a:1,b:2):1,c:2);"))
        with pytest.raises(NonUltrametricTreeError) as excinfo:
            correlation_from_vcv(cov)
        assert excinfo.value.shortest == ("a", 2.0)
        assert excinfo.value.longest == ("b", 3.0)
        assert isinstance(excinfo.value, IllDefinedCorrelationError)

    def test_per_tip_accepts_non_ultrametric(self):
        cov = vcv(PhyloTree.from_newick("((a:1,b:2):1,c:2);"))
        corr = correlation_from_vcv(cov, normalization="per_tip")
        np.testing.assert_allclose(np.diag(corr.to_numpy()), 1.0)
        assert corr.loc["a", "b"] == pytest.approx(1.0 / np.sqrt(2.0 * 3.0))

    def test_tolerance_absorbs_rounding(self):
        tree = PhyloTree.from_newick("((a:0.1,b:0.1000000001):0.2,c:0.3);")
        corr = correlation_from_vcv(vcv(tree))
        np.testing.assert_allclose(np.diag(corr.to_numpy()), 1.0)

    def test_zero_height(self):
        cov = vcv(PhyloTree.from_newick("((a:0,b:0):0,c:0);"))
        with pytest.raises(IllDefinedCorrelationError):
            correlation_from_vcv(cov)

    def test_unknown_normalization(self):
        with pytest.raises(IllDefinedCorrelationError):
            correlation_from_vcv(np.eye(3), normalization="max")

    def test_numpy_input_stays_numpy(self):
        corr = correlation_from_vcv(np.array([[2.0, 1.0], [1.0, 2.0]]))
        assert isinstance(corr, np.ndarray)
        np.testing.assert_allclose(corr, [[1.0, 0.5], [0.5, 1.0]])

    def test_rescale_round_trip(self, tree_factory):
        tree = tree_factory(n_tips=10)
        cov = vcv(tree)
        back = rescale_correlation(correlation_from_vcv(cov), tree.height)
        assert isinstance(back, pd.DataFrame)
        np.testing.assert_allclose(back.to_numpy(), cov.to_numpy())


class TestPatristicDistances:
    def test_worked_example(self):
        dist = patristic_distances(vcv(PhyloTree.from_newick(WORKED_EXAMPLE)))
        assert dist.loc["a", "b"] == pytest.approx(0.3)
        assert dist.loc["a", "c"] == pytest.approx(1.1)
        assert dist.loc["a", "e"] == pytest.approx(2.1)
        np.testing.assert_allclose(np.diag(dist.to_numpy()), 0.0)
        np.testing.assert_allclose(dist.to_numpy(), dist.to_numpy().T)
