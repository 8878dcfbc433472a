"""Crop insurance: indemnity formulas, policies and the profit matrix."""
