# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand shell module

Execute commands through a shell.
"""

import shlex

from stagehand.modules.base import register_module
from stagehand.modules.builtin_command import CommandModule


@register_module
class ShellModule(CommandModule):
    """
    Execute shell commands on target hosts.

    Pipes, redirects and environment expansion work. ``executable`` picks
    a shell other than /bin/sh.
    """

    name = "shell"
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
        "executable": None,
    }
    use_shell = True

    def _prepare(self, cmd: str) -> str:
        executable = self.get_arg("executable")
        if executable:
            return f"{executable} -c {shlex.quote(cmd)}"
        return cmd
