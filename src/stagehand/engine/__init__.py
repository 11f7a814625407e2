# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Engine Module

Core engine for loading inventories and playbooks and running them.
The scheduler, executor and runner are imported from their own modules.
"""

from stagehand.engine.inventory import InventoryManager
from stagehand.engine.playbook import PlaybookParser, Play, Task, Block
from stagehand.engine.templating import TemplateEngine
from stagehand.engine.results import TaskResult, PlayResult, PlaybookResult
from stagehand.engine.variables import ScopeStack, VariableManager
from stagehand.engine.errors import (
    StagehandError,
    ParseError,
    UnsupportedFeatureError,
    RenderError,
    UnreachableError,
    VaultError,
)

__all__ = [
    'InventoryManager',
    'PlaybookParser',
    'Play',
    'Task',
    'Block',
    'TemplateEngine',
    'TaskResult',
    'PlayResult',
    'PlaybookResult',
    'ScopeStack',
    'VariableManager',
    'StagehandError',
    'ParseError',
    'UnsupportedFeatureError',
    'RenderError',
    'UnreachableError',
    'VaultError',
]
