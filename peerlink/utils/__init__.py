"""Utilities shared across the package."""
from __future__ import annotations
