# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand debug module

Print debug messages during playbook execution.
"""

import json

from stagehand.engine.errors import UndefinedVariableError
from stagehand.engine.templating import get_template_engine
from stagehand.modules.base import Module, ModuleResult, register_module

NOT_DEFINED = "VARIABLE IS NOT DEFINED!"


@register_module
class DebugModule(Module):
    """
    Print debug messages.

    ``msg`` arrives already rendered; ``var`` names an expression that is
    evaluated here so that an undefined variable reports instead of failing.
    """

    name = "debug"
    required_args = []
    optional_args = {
        "msg": "Hello world!",
        "var": None,
        "verbosity": 0,
    }

    async def run(self) -> ModuleResult:
        """Print the debug message."""
        verbosity = int(self.get_arg("verbosity", 0) or 0)
        if verbosity > self.context.verbosity:
            return ModuleResult(skipped=True, msg="Verbosity threshold not met")

        var = self.get_arg("var")
        if var:
            var = str(var)
            try:
                value = get_template_engine().evaluate(var, self.context.variables)
            except UndefinedVariableError:
                value = NOT_DEFINED
            return ModuleResult(
                changed=False,
                msg=f"{var}: {_display(value)}",
                results={var: value},
            )

        msg = self.get_arg("msg")
        return ModuleResult(
            changed=False,
            msg=_display(msg),
        )


def _display(value) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str)
    return str(value)
