"""Shared libraries for Careline services."""
