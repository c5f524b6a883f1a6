"""Residual correlation structures and the GLS estimator."""
