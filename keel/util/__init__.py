"""Utilities shared across keel."""
