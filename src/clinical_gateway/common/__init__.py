"""Shared helpers used across the clinical gateway."""
