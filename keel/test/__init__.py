"""Tests for keel."""
