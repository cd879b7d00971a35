"""Bootstrap-validated lasso and cluster-randomized trial design simulations."""

__version__ = "0.1.0"
