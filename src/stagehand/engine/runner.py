# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Playbook Runner

High-level runner that coordinates vault secrets, inventory, playbook
parsing, variables, the scheduler and output.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from stagehand.connections.base import ConnectionFactory
from stagehand.engine.config import get_config
from stagehand.engine.errors import (
    ExitCode,
    ParseError,
    StagehandError,
    UnsupportedFeatureError,
    VaultError,
)
from stagehand.engine.events import ConsoleDisplay, EventStream, JsonLinesWriter
from stagehand.engine.inventory import InventoryManager
from stagehand.engine.loader import DataLoader
from stagehand.engine.playbook import PlaybookParser
from stagehand.engine.results import PlaybookResult
from stagehand.engine.scheduler import Scheduler
from stagehand.engine.variables import VariableManager, create_fact_cache
from stagehand.engine.vault import VaultLib, VaultSecret

logger = logging.getLogger(__name__)


def build_vault(vault_ids: Sequence[str] = (), password_file: Optional[str] = None) -> VaultLib:
    """
    Vault with the secrets given on the command line and in config.

    ``--vault-id`` identities come first, then ``--vault-password-file``,
    then the configured identity list and password file.
    """
    config = get_config()
    vault = VaultLib()
    for spec in list(vault_ids) + list(config.vault_identity_list):
        vault.add_secret(VaultSecret.from_identity(spec))
    for path in (password_file, config.vault_password_file):
        if path:
            vault.add_secret(VaultSecret.from_file(path))
    return vault


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Vault secrets and the YAML loader
    - Inventory loading and host selection
    - Playbook parsing
    - Scheduling and output (console or JSON)
    """

    def __init__(
        self,
        playbook_path: str,
        inventory_sources: Sequence[str] = (),
        forks: Optional[int] = None,
        limit: Optional[str] = None,
        check_mode: bool = False,
        verbosity: int = 0,
        extra_vars: Optional[Dict[str, Any]] = None,
        only_tags: Sequence[str] = (),
        skip_tags: Sequence[str] = (),
        json_output: bool = False,
        events_path: Optional[str] = None,
        vault_ids: Sequence[str] = (),
        vault_password_file: Optional[str] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        vault: Optional[VaultLib] = None,
    ):
        self.playbook_path = playbook_path
        self.inventory_sources = list(inventory_sources)
        self.forks = forks or get_config().forks
        self.limit = limit
        self.check_mode = check_mode
        self.verbosity = verbosity
        self.extra_vars = extra_vars or {}
        self.only_tags = list(only_tags)
        self.skip_tags = list(skip_tags)
        self.json_output = json_output
        self.events_path = events_path
        self.vault_ids = list(vault_ids)
        self.vault_password_file = vault_password_file
        self.connection_factory = connection_factory
        self._vault = vault

        self.inventory: Optional[InventoryManager] = None

    def run(self) -> int:
        """
        Run the playbook synchronously.

        Returns:
            Exit code (0 success, 2 host failed or play halted, 3 parse
            error, 4 unreachable, 5 unsupported feature, 6 vault error)
        """
        try:
            result = asyncio.run(self.run_async())
        except ParseError as e:
            return self._report_error("parse_error", "Parse error", e)
        except UnsupportedFeatureError as e:
            return self._report_error("unsupported_feature", "Unsupported feature", e)
        except VaultError as e:
            return self._report_error("vault_error", "Vault error", e)
        except StagehandError as e:
            return self._report_error("error", "Error", e)
        except KeyboardInterrupt:
            if self.json_output:
                self._print_json_error("interrupted", "Execution interrupted",
                                       ExitCode.KEYBOARD_INTERRUPT)
            else:
                print("\nInterrupted", file=sys.stderr)
            return ExitCode.KEYBOARD_INTERRUPT

        if self.json_output:
            print(result.to_json())
        return result.exit_code

    def _report_error(self, error_type: str, label: str, error: StagehandError) -> int:
        logger.debug("Run aborted", exc_info=error)
        if self.json_output:
            self._print_json_error(error_type, str(error), error.exit_code)
        else:
            print(f"ERROR! {label}: {error}", file=sys.stderr)
        return error.exit_code

    def _print_json_error(self, error_type: str, message: str, exit_code: int) -> None:
        """Print an error in JSON format."""
        error_obj = {
            "error": True,
            "error_type": error_type,
            "message": message,
            "exit_code": int(exit_code),
        }
        print(json.dumps(error_obj, indent=2))

    def load(self):
        """
        Load everything the run needs before any host starts.

        Returns:
            (inventory, plays, loader)

        Raises:
            ParseError, UnsupportedFeatureError, VaultError
        """
        vault = self._vault or build_vault(self.vault_ids, self.vault_password_file)
        loader = DataLoader(vault)

        inventory = InventoryManager(loader)
        for source in self.inventory_sources:
            inventory.parse(source)
        if not self.inventory_sources:
            logger.info("No inventory given; using implicit localhost")
            inventory.add_host('localhost', {'stagehand_connection': 'local'})
            inventory.reconcile()
        self.inventory = inventory

        plays = PlaybookParser(self.playbook_path, loader).parse()
        return inventory, plays, loader

    async def run_async(self) -> PlaybookResult:
        """Run the playbook asynchronously."""
        inventory, plays, _ = self.load()

        try:
            fact_cache = create_fact_cache()
        except ValueError as e:
            raise StagehandError(f"Invalid fact cache configuration: {e}")
        variable_manager = VariableManager(inventory, self.extra_vars, fact_cache)

        events = EventStream()
        if not self.json_output:
            events.add_sink(ConsoleDisplay(verbosity=self.verbosity))
        writer: Optional[JsonLinesWriter] = None
        if self.events_path:
            try:
                writer = JsonLinesWriter(sys.stdout if self.events_path == '-' else self.events_path)
            except OSError as e:
                raise StagehandError(f"Cannot open event file {self.events_path}: {e}")
            events.add_sink(writer)

        scheduler = Scheduler(
            inventory,
            variable_manager,
            forks=self.forks,
            connection_factory=self.connection_factory,
            check_mode=self.check_mode,
            only_tags=self.only_tags,
            skip_tags=self.skip_tags,
            limit=self.limit,
            events=events,
            base_dir=Path(self.playbook_path).parent,
            verbosity=self.verbosity,
        )
        try:
            return await scheduler.run_playbook(plays, str(self.playbook_path))
        finally:
            if writer is not None:
                writer.close()


def list_hosts(runner: PlaybookRunner) -> List[str]:
    """Hosts each play would target, for ``--list-hosts``."""
    inventory, plays, _ = runner.load()
    lines: List[str] = []
    allowed = {h.name for h in inventory.get_hosts(runner.limit)} if runner.limit else None
    for number, play in enumerate(plays, 1):
        hosts = [h.name for h in inventory.get_hosts(play.hosts, order=play.order)
                 if allowed is None or h.name in allowed]
        lines.append(f"play #{number} ({play.hosts}): {play.name}\tHOSTS: {len(hosts)}")
        lines.extend(f"    {name}" for name in hosts)
    return lines
