# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand pause module

Pause the host's task stream.
"""

import asyncio

from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class PauseModule(Module):
    """
    Pause for a given time.

    Runs are non-interactive, so a ``prompt`` is shown but never waited on.
    Only the current host's stream sleeps.
    """

    name = "pause"
    required_args = []
    optional_args = {
        "seconds": None,        # Number of seconds to pause
        "minutes": None,        # Number of minutes to pause
        "prompt": None,         # Message to display
    }

    def _pause_time(self) -> float:
        pause_time = 0.0
        if self.get_arg("seconds") is not None:
            pause_time += float(self.get_arg("seconds"))
        if self.get_arg("minutes") is not None:
            pause_time += float(self.get_arg("minutes")) * 60
        return pause_time

    def validate_args(self):
        try:
            self._pause_time()
        except (TypeError, ValueError):
            return "seconds and minutes must be numbers"
        return None

    async def run(self) -> ModuleResult:
        """Pause execution."""
        pause_time = self._pause_time()
        prompt = self.get_arg("prompt")

        if pause_time > 0:
            await asyncio.sleep(pause_time)
            return ModuleResult(
                changed=False,
                msg=f"Paused for {pause_time:g} seconds",
                results={"delta": pause_time},
            )

        if prompt:
            return ModuleResult(
                changed=False,
                msg=f"Prompt (skipped in non-interactive mode): {prompt}",
                results={"user_input": ""},
            )

        return ModuleResult(
            changed=False,
            msg="Pause without duration or prompt (skipped)",
        )

    async def check(self) -> ModuleResult:
        return ModuleResult(
            changed=False,
            msg=f"Would pause for {self._pause_time():g} seconds",
        )
