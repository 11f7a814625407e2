# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""Stagehand release metadata."""

from __future__ import annotations

__version__ = "0.3.0"
__author__ = "Stagehand Contributors"
__codename__ = "Fly Loft"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 3, 0)
