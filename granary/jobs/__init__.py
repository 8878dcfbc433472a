"""Scheduled marketing jobs."""
