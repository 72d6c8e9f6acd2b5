"""Tests for :mod:`keel.tap`."""
