"""Tests for :mod:`keel.autoscale`."""
