# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand: a minimal agentless configuration-management orchestrator.

Runs YAML playbooks against an inventory of hosts over local, SSH and WinRM
transports.

Features:
    - Inventory groups as a DAG with deterministic variable precedence
    - Layered variable scopes with vault-encrypted values
    - Blocks with rescue/always, handlers, retries and change detection
    - Parallel host streams with fail-fraction gating

This package exposes release metadata; the CLI lives in ``stagehand.cli``.
"""

from __future__ import annotations

from stagehand.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
