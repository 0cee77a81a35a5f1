"""
Solver backends for the estimator.
"""
