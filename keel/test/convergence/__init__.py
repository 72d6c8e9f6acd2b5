"""Tests for :mod:`keel.convergence`."""
