"""Operator supplied upgrade hook scripts."""

import os
import stat
from typing import List, Tuple

from pgclusters.constants import UPGRADE_HOOKS_DIR


class HookService:
    """Runs the executables in ``<common_confdir>/pg_upgradecluster.d`` in name order."""

    def __init__(self, settings, logger, console, command_runner):
        self.settings = settings
        self.logger = logger
        self.console = console
        self.command_runner = command_runner

    @property
    def hooks_dir(self) -> str:
        return os.path.join(self.settings.common_confdir, UPGRADE_HOOKS_DIR)

    def scripts(self) -> List[str]:
        try:
            entries = sorted(os.listdir(self.hooks_dir))
        except OSError:
            return []

        scripts = []
        for entry in entries:
            path = os.path.join(self.hooks_dir, entry)
            try:
                mode = os.stat(path).st_mode
            except OSError:
                continue
            if stat.S_ISREG(mode) and os.access(path, os.X_OK):
                scripts.append(path)
        return scripts

    def run(self, phase: str, old_version: str, new_name: str, new_version: str, owner: Tuple[int, int]):
        """Runs every hook for ``phase``; a failing script raises ``ExternalToolFailure``."""
        for script in self.scripts():
            self.console.print(f"Running {phase} phase upgrade hook {os.path.basename(script)} ...")
            self.logger.info("Running %s hook %s", phase, script)
            self.command_runner.run(
                [script, old_version, new_name, new_version, phase],
                owner=owner,
                cwd="/",
            )
