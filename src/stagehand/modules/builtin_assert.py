# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand assert module

Assert conditions during playbook execution.
"""

from stagehand.engine.errors import RenderError
from stagehand.engine.templating import evaluate_when
from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class AssertModule(Module):
    """
    Assert conditions are true.

    Useful for validating state before proceeding with tasks.
    """

    name = "assert"
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }

    async def run(self) -> ModuleResult:
        """Evaluate assertions."""
        that = self.args["that"]
        msg = self.get_arg("fail_msg") or self.get_arg("msg")
        success_msg = self.get_arg("success_msg")
        quiet = self.get_arg("quiet", False)

        # Ensure 'that' is a list
        conditions = that if isinstance(that, list) else [that]

        for condition in conditions:
            try:
                passed = evaluate_when(condition, self.context.variables)
            except RenderError as e:
                return ModuleResult(
                    failed=True,
                    msg=f"Assertion '{condition}' could not be evaluated: {e.message}",
                    results={"assertion": condition, "evaluated_to": False},
                )
            if not passed:
                return ModuleResult(
                    changed=False,
                    failed=True,
                    msg=str(msg) if msg else f"Assertion failed: {condition}",
                    results={"assertion": condition, "evaluated_to": False},
                )

        return ModuleResult(
            changed=False,
            msg="" if quiet else str(success_msg or "All assertions passed"),
        )
