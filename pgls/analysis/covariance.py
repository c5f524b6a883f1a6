"""
Phylogenetic variance-covariance matrices.

Under Brownian motion the covariance of two tips is the length of the path
they share from the root, i.e. the root distance of their most recent common
ancestor; the variance of a tip is its root-to-tip distance.
"""

import logging

import numpy as np
import pandas as pd

from ..core.exceptions import IllDefinedCorrelationError, NonUltrametricTreeError
from ..core.tree import DEFAULT_ULTRAMETRIC_TOLERANCE

logger = logging.getLogger(__name__)

NORMALIZATIONS = ("height", "per_tip")


def vcv(tree) -> pd.DataFrame:
    """
    Builds the phylogenetic variance-covariance matrix of a tree.

    Every pair of tips that descends through two different children of a node
    has that node as its most recent common ancestor, so each block of the
    matrix is filled once from the precomputed root distances.

    Args:
        tree (PhyloTree): Tree with non-negative branch lengths.

    Returns:
        pandas.DataFrame: N x N matrix indexed by tip label (tree order).
    """
    dist = tree.root_distances()
    below = tree.descendant_tips()
    n = tree.n_tips
    matrix = np.zeros((n, n))

    for node in range(tree.n_nodes):
        kids = tree.children[node]
        if len(kids) < 2:
            continue
        shared = dist[node]
        for a in range(len(kids)):
            left = below[kids[a]]
            for b in range(a + 1, len(kids)):
                right = below[kids[b]]
                matrix[np.ix_(left, right)] = shared
                matrix[np.ix_(right, left)] = shared

    tips = tree.tip_nodes
    matrix[np.arange(n), np.arange(n)] = dist[tips]

    labels = list(tree.tip_labels)
    logger.debug("Built %dx%d phylogenetic covariance matrix", n, n)
    return pd.DataFrame(matrix, index=labels, columns=labels)


def correlation_from_vcv(cov, normalization="height", tolerance=DEFAULT_ULTRAMETRIC_TOLERANCE):
    """
    Normalises a phylogenetic covariance matrix to unit diagonal.

    Args:
        cov (pandas.DataFrame | numpy.ndarray): Covariance matrix from :func:`vcv`.
        normalization (str): 'height' divides by the common root-to-tip distance and is
                             only defined for ultrametric trees; 'per_tip' divides entry
                             (i, j) by sqrt(M_ii * M_jj) and accepts any tree.
        tolerance (float): Allowed spread of the diagonal relative to its maximum.

    Returns:
        Same type as ``cov``, with ones on the diagonal.

    Raises:
        NonUltrametricTreeError: 'height' normalisation of a non-ultrametric matrix.
        IllDefinedCorrelationError: A zero variance, or an unknown normalisation.
    """
    if normalization not in NORMALIZATIONS:
        raise IllDefinedCorrelationError(
            f"Unknown normalization {normalization!r}; expected one of {NORMALIZATIONS}"
        )
    values = np.asarray(cov, dtype=float)
    diag = np.diag(values).copy()
    if diag.size == 0:
        raise IllDefinedCorrelationError("Cannot normalise an empty matrix")

    if np.any(diag <= 0):
        bad = np.flatnonzero(diag <= 0)
        names = _names(cov, bad)
        raise IllDefinedCorrelationError(
            f"Tips {names} have zero root-to-tip distance; their correlation is undefined"
        )

    if normalization == "height":
        top, bottom = diag.max(), diag.min()
        if top - bottom > tolerance * top:
            lo, hi = int(np.argmin(diag)), int(np.argmax(diag))
            shortest = (_names(cov, [lo])[0], float(bottom))
            longest = (_names(cov, [hi])[0], float(top))
            raise NonUltrametricTreeError(
                f"Tree is not ultrametric: tip {shortest[0]!r} is at {bottom:.6g} and "
                f"tip {longest[0]!r} at {top:.6g} from the root (tolerance {tolerance:g}); "
                "use normalization='per_tip' for non-ultrametric trees",
                shortest=shortest, longest=longest,
            )
        result = values / top
        np.fill_diagonal(result, 1.0)
    else:
        scale = np.sqrt(diag)
        result = values / np.outer(scale, scale)
        np.fill_diagonal(result, 1.0)

    return _like(cov, result)


def rescale_correlation(corr, height):
    """Inverse of height normalisation: multiply a correlation matrix back by the tree height."""
    return _like(corr, np.asarray(corr, dtype=float) * float(height))


def patristic_distances(cov):
    """
    Tip-to-tip path lengths derived from a covariance matrix: M_ii + M_jj - 2 M_ij.
    """
    values = np.asarray(cov, dtype=float)
    diag = np.diag(values)
    result = diag[:, None] + diag[None, :] - 2.0 * values
    np.fill_diagonal(result, 0.0)
    # shared paths never exceed either root distance, so negatives are rounding
    np.clip(result, 0.0, None, out=result)
    return _like(cov, result)


def _like(template, values):
    if isinstance(template, pd.DataFrame):
        return pd.DataFrame(values, index=template.index, columns=template.columns)
    return values


def _names(cov, positions):
    if isinstance(cov, pd.DataFrame):
        return [str(cov.index[p]) for p in positions]
    return [int(p) for p in positions]


if __name__ == '__main__':
    from ..core.tree import PhyloTree

    example = PhyloTree.from_newick("(((a:0.15,b:0.15):0.4,c:0.55):0.5,(d:0.25,e:0.25):0.8);")
    print(vcv(example))
    print(correlation_from_vcv(vcv(example)).round(3))
