# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand command module

Execute commands without shell processing.
"""

from typing import Optional

from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class CommandModule(Module):
    """
    Execute commands on target hosts.

    Unlike shell, this module does not process commands through a shell,
    so shell operators and variables won't work. ``creates``/``removes``
    make the command idempotent by checking a path before running.
    """

    name = "command"
    required_args = []  # Either _raw_params or cmd
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
    }
    needs_connection = True
    mutating = True
    use_shell = False

    def validate_args(self) -> Optional[str]:
        if not self._command():
            return "Either free-form command or 'cmd' argument is required"
        return None

    def _command(self) -> str:
        cmd = self.args.get("_raw_params") or self.args.get("cmd") or ""
        if isinstance(cmd, list):
            cmd = " ".join(str(part) for part in cmd)
        return str(cmd).strip()

    async def _path_guard(self) -> Optional[ModuleResult]:
        """Skip result when ``creates``/``removes`` say there is nothing to do."""
        creates = self.get_arg("creates")
        removes = self.get_arg("removes")
        if not creates and not removes:
            return None

        conn = await self.get_connection()

        # Check 'creates' - skip if file exists
        if creates:
            stat_result = await conn.stat(str(creates))
            if stat_result and stat_result.get("exists"):
                return ModuleResult(
                    changed=False,
                    msg=f"skipped, since {creates} exists",
                    results={"cmd": self._command()},
                )

        # Check 'removes' - skip if file doesn't exist
        if removes:
            stat_result = await conn.stat(str(removes))
            if not stat_result or not stat_result.get("exists"):
                return ModuleResult(
                    changed=False,
                    msg=f"skipped, since {removes} does not exist",
                    results={"cmd": self._command()},
                )
        return None

    def _prepare(self, cmd: str) -> str:
        return cmd

    async def run(self) -> ModuleResult:
        """Execute the command."""
        guarded = await self._path_guard()
        if guarded is not None:
            return guarded

        cmd = self._command()
        conn = await self.get_connection()
        result = await conn.run(
            self._prepare(cmd),
            shell=self.use_shell,
            timeout=self.context.timeout,
            cwd=self.get_arg("chdir"),
            environment=self.context.environment or None,
        )

        return ModuleResult(
            changed=True,  # Commands always report changed
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
            results={"cmd": cmd, "delta": round(result.duration, 3)},
        )

    async def check(self) -> ModuleResult:
        """Report what would happen; stat is the only call made on the host."""
        guarded = await self._path_guard()
        if guarded is not None:
            return guarded
        return ModuleResult(
            skipped=True,
            msg="command would be executed (check mode)",
            results={"cmd": self._command()},
        )
