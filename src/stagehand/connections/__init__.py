# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Connections Module

Connection plugins for local, SSH and WinRM hosts.
"""

from stagehand.connections.base import Connection, ConnectionFactory, RunResult, create_connection
from stagehand.connections.local import LocalConnection

__all__ = [
    'Connection',
    'ConnectionFactory',
    'RunResult',
    'LocalConnection',
    'create_connection',
]
