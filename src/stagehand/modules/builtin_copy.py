# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand copy module

Copy files or inline content to hosts.
"""

import hashlib
import json
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from stagehand.modules.base import Module, ModuleResult, register_module


@dataclass
class CopyPlan:
    """What a copy would do to the destination."""

    dest: str
    content: bytes
    mode: Optional[str]
    content_changed: bool
    mode_changed: bool

    @property
    def changed(self) -> bool:
        return self.content_changed or self.mode_changed


def normalize_mode(mode) -> Optional[str]:
    """
    Four-digit octal string for a mode given as an int or a string.

    YAML reads an unquoted ``0644`` as the integer 420, so integers are
    taken as already converted.
    """
    if mode is None:
        return None
    if isinstance(mode, int) and not isinstance(mode, bool):
        return oct(mode)[2:].zfill(4)
    text = str(mode).strip()
    if text.startswith('0o'):
        text = text[2:]
    if not text or any(c not in '01234567' for c in text) or len(text) > 4:
        raise ValueError(f"Unsupported mode {mode!r}: use an octal mode such as '0644'")
    return text.zfill(4)


@register_module
class CopyModule(Module):
    """
    Copy files from the control node to target hosts.

    Supports:
    - File copying with an optional mode
    - Content-based copying (inline content)
    - Idempotency by comparing the bytes and mode already on the host
    """

    name = "copy"
    required_args = ["dest"]  # Either src or content is required too
    optional_args = {
        "src": None,
        "content": None,
        "mode": None,
        "force": True,
    }
    needs_connection = True
    mutating = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.args.get("src") is None and self.args.get("content") is None:
            return "Either 'src' or 'content' is required"
        if self.args.get("src") is not None and self.args.get("content") is not None:
            return "'src' and 'content' are mutually exclusive"
        try:
            normalize_mode(self.get_arg("mode"))
        except ValueError as e:
            return str(e)
        return None

    def _source_path(self, src: str) -> Optional[Path]:
        """Resolve ``src`` against the playbook's ``files/`` dir, the playbook dir and cwd."""
        path = Path(src).expanduser()
        if path.is_absolute():
            return path if path.is_file() else None
        candidates = []
        if self.context.base_dir is not None:
            candidates.append(self.context.base_dir / "files" / path)
            candidates.append(self.context.base_dir / path)
        candidates.append(Path.cwd() / path)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def _content(self) -> bytes:
        content = self.args["content"]
        if isinstance(content, (dict, list)):
            content = json.dumps(content, indent=4, sort_keys=True)
        return str(content).encode('utf-8')

    async def _plan(self) -> Union[ModuleResult, CopyPlan]:
        dest = str(self.args["dest"])
        src = self.get_arg("src")
        mode = normalize_mode(self.get_arg("mode"))

        if src is not None:
            src_path = self._source_path(str(src))
            if src_path is None:
                return ModuleResult(failed=True, msg=f"Source file not found: {src}")
            data = src_path.read_bytes()
        else:
            data = self._content()

        conn = await self.get_connection()
        stat_result = await conn.stat(dest)
        if dest.endswith('/') or (stat_result and stat_result.get("isdir")):
            if src is None:
                return ModuleResult(failed=True, msg=f"Destination {dest} is a directory; content needs a file path")
            dest = posixpath.join(dest, Path(str(src)).name)
            stat_result = await conn.stat(dest)

        existing = await conn.read(dest) if stat_result else None
        if existing is None:
            content_changed = True
        elif not self.get_arg("force", True):
            content_changed = False
        else:
            content_changed = existing != data

        current_mode = stat_result.get("mode") if stat_result else None
        mode_changed = bool(mode and current_mode and current_mode != mode)

        return CopyPlan(dest, data, mode, content_changed, mode_changed)

    def _result(self, plan: CopyPlan, msg: str) -> ModuleResult:
        return ModuleResult(
            changed=plan.changed,
            msg=msg,
            results={
                "dest": plan.dest,
                "checksum": hashlib.sha1(plan.content).hexdigest(),
                "size": len(plan.content),
                "mode": plan.mode,
            },
        )

    async def run(self) -> ModuleResult:
        """Copy the file."""
        plan = await self._plan()
        if isinstance(plan, ModuleResult):
            return plan

        if not plan.changed:
            return self._result(plan, f"{plan.dest} already up to date")

        conn = await self.get_connection()
        await conn.put(plan.content, plan.dest, mode=plan.mode)
        return self._result(plan, f"Copied to {plan.dest}")

    async def check(self) -> ModuleResult:
        """Compare without writing."""
        plan = await self._plan()
        if isinstance(plan, ModuleResult):
            return plan
        if not plan.changed:
            return self._result(plan, f"{plan.dest} already up to date")
        return self._result(plan, f"{plan.dest} would be updated (check mode)")
