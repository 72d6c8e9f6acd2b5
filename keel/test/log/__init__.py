"""Tests for :mod:`keel.log`."""
