"""Twisted application plugins for keel."""
