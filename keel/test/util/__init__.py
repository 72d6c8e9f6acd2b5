"""Tests for :mod:`keel.util`."""
