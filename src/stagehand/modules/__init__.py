# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Modules

Built-in actions for task execution.
"""

from stagehand.modules.base import Module, ModuleContext, ModuleResult, get_module, list_modules

__all__ = [
    'Module',
    'ModuleContext',
    'ModuleResult',
    'get_module',
    'list_modules',
]
