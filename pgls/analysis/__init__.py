"""Phylogenetic covariance matrices and comparative regression."""
