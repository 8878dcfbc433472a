"""Granary HTTP API."""
