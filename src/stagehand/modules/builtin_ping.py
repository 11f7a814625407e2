# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand ping module

A trivial test module that returns 'pong' once the host is reachable.
"""

from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class PingModule(Module):
    """
    Verify that a host is reachable.

    Opening the connection is the whole test; an unreachable host surfaces
    as UnreachableError from the connection.
    """

    name = "ping"
    required_args = []
    optional_args = {
        "data": "pong",
    }
    needs_connection = True

    async def run(self) -> ModuleResult:
        """Return pong (or custom data)."""
        await self.get_connection()
        data = self.get_arg("data", "pong")
        if data == "crash":
            return ModuleResult(failed=True, msg="boom")

        return ModuleResult(
            changed=False,
            msg=str(data),
            results={"ping": data},
        )
