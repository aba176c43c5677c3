"""Deterministic utility functions."""
