# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand fail module

Fail the host with a message.
"""

from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class FailModule(Module):
    """Fail the task, usually guarded by a ``when`` condition."""

    name = "fail"
    required_args = []
    optional_args = {
        "msg": "Failed as requested from task",
    }

    async def run(self) -> ModuleResult:
        msg = self.get_arg("msg") or self.optional_args["msg"]
        return ModuleResult(
            changed=False,
            failed=True,
            msg=str(msg),
        )
