"""
Utility helpers shared across the estimator (validators, rotations, locks).
"""
