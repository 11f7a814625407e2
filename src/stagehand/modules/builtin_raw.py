# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand raw module

Execute raw commands without module processing.
"""

from typing import Optional

from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class RawModule(Module):
    """
    Execute raw commands without module wrapping.

    The command string goes to the connection as is, through the host's
    default shell.
    """

    name = "raw"
    required_args = []
    optional_args = {}
    needs_connection = True
    mutating = True

    def validate_args(self) -> Optional[str]:
        if not self.args.get("_raw_params"):
            return "Free-form command is required"
        return None

    async def run(self) -> ModuleResult:
        """Execute the raw command."""
        cmd = str(self.args["_raw_params"])
        conn = await self.get_connection()

        # Raw commands go directly to the connection
        result = await conn.run(
            cmd,
            shell=True,
            timeout=self.context.timeout,
            environment=self.context.environment or None,
        )

        return ModuleResult(
            changed=True,
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
        )
