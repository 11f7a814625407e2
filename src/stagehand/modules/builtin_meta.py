# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand meta module

Meta actions for playbook execution control.
"""

from stagehand.modules.base import Module, ModuleResult, register_module

# Actions the scheduler acts on
SUPPORTED_ACTIONS = (
    "flush_handlers",       # Run any pending handlers now
    "noop",                 # Do nothing
    "end_host",             # End the play for the current host
)


@register_module
class MetaModule(Module):
    """
    Execute meta tasks.

    The module only validates the action; the scheduler carries it out
    when it sees ``meta_action`` in the result.
    """

    name = "meta"
    required_args = []
    optional_args = {}

    async def run(self) -> ModuleResult:
        """Execute meta action."""
        action = str(self.args.get("_raw_params") or self.args.get("free_form") or "").strip()

        if not action:
            return ModuleResult(
                failed=True,
                msg="No meta action specified",
            )

        if action not in SUPPORTED_ACTIONS:
            return ModuleResult(
                failed=True,
                msg=f"Meta action '{action}' is not supported. Supported: {', '.join(SUPPORTED_ACTIONS)}",
            )

        # Return the meta action for the engine to handle
        return ModuleResult(
            changed=False,
            msg=f"Meta action: {action}",
            results={"meta_action": action},
        )
