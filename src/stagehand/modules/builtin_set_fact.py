# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand set_fact module

Set host facts (variables) during playbook execution.
"""

from typing import Optional

from stagehand.modules.base import Module, ModuleResult, register_module


@register_module
class SetFactModule(Module):
    """
    Set host facts from task.

    Variables set with set_fact are available for subsequent tasks on the
    same host. ``cacheable: true`` also writes them to the fact cache so
    later plays (and runs, with the jsonfile cache) start with them.
    """

    name = "set_fact"
    required_args = []
    optional_args = {
        "cacheable": False,
    }

    def validate_args(self) -> Optional[str]:
        facts = self._facts()
        if not facts:
            return "set_fact needs at least one key=value pair"
        for key in facts:
            if not str(key).isidentifier():
                return f"Invalid fact name: {key!r}"
        return None

    def _facts(self):
        return {k: v for k, v in self.args.items() if k not in ('cacheable', '_raw_params')}

    async def run(self) -> ModuleResult:
        """Set the facts."""
        facts = self._facts()
        return ModuleResult(
            changed=False,  # set_fact is not considered a change
            msg=f"Set {len(facts)} fact(s)",
            results={"stagehand_facts": facts},
            facts=facts,
            cacheable=_truthy(self.get_arg("cacheable")),
        )


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1', 'on')
    return bool(value)
