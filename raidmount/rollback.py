"""Ordered compensating actions for acquired resources."""

import logging
import os
import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollbackStep:
    """
    One compensating action.

    ``action`` runs the step in-process during unwinding and returns True on
    success. ``command`` is the equivalent argv written to the teardown script.
    """
    label: str
    command: List[str]
    action: Callable[[], bool]

    def shell_line(self) -> str:
        command = ' '.join(shlex.quote(arg) for arg in self.command)
        message = shlex.quote(f"raidmount teardown: failed to {self.label}")
        return f"{command} || echo {message} >&2"


class RollbackLedger:
    """Records rollback steps in acquisition order; consumed exactly once."""

    def __init__(self):
        self._steps: List[RollbackStep] = []
        self._consumed = False

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> List[RollbackStep]:
        """Steps in acquisition order."""
        return list(self._steps)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def register(self, label: str, command: Sequence[str], action: Callable[[], bool]) -> RollbackStep:
        """
        Append a compensating action for a resource that was just acquired.

        Args:
            label: Human-readable description, e.g. "detach /dev/loop3"
            command: argv equivalent for the teardown script
            action: Callable that performs the rollback, returning True on success

        Returns:
            The registered RollbackStep
        """
        self._ensure_not_consumed()
        step = RollbackStep(label=label, command=list(command), action=action)
        self._steps.append(step)
        logger.debug(f"Registered rollback step #{len(self._steps)}: {label}")
        return step

    def execution_order(self) -> List[RollbackStep]:
        """Steps in the order they are run: reverse of acquisition."""
        return list(reversed(self._steps))

    def unwind(self) -> List[Dict[str, str]]:
        """
        Run every registered step in reverse order, exactly once.

        A failing step is logged and recorded but never stops the remaining
        steps from running.

        Returns:
            List of {'label', 'error'} entries for steps that failed
        """
        self._ensure_not_consumed()
        self._consumed = True

        failures = []
        if self._steps:
            logger.warning(f"Rolling back {len(self._steps)} acquired resource(s)")

        for step in self.execution_order():
            logger.info(f"Rollback: {step.label}", extra={'step': step.label})
            try:
                ok = step.action()
                error = None if ok else "command reported failure"
            except Exception as e:
                error = str(e) or e.__class__.__name__
            if error:
                logger.error(f"Rollback step failed, continuing: {step.label}: {error}",
                             extra={'step': step.label})
                failures.append({'label': step.label, 'error': error})

        return failures

    def render_script(self, description: Optional[str] = None) -> str:
        """
        Render the ledger as a standalone POSIX shell teardown script.

        Commands appear in reverse acquisition order. Each line is best-effort
        and the script removes itself as its final action.
        """
        generated = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
        lines = ["#!/bin/sh"]
        if description:
            lines.append(f"# {description}")
        lines.append(f"# Generated by raidmount at {generated}. Runs once, then deletes itself.")
        lines.append("")
        lines.extend(step.shell_line() for step in self.execution_order())
        lines.append('rm -f -- "$0"')
        return '\n'.join(lines) + '\n'

    def write_script(self, path: Union[str, Path], description: Optional[str] = None) -> Path:
        """
        Persist the ledger as an executable teardown script and consume it.

        Args:
            path: Destination path of the script
            description: Optional header comment

        Returns:
            Absolute path of the written script
        """
        self._ensure_not_consumed()
        target = Path(path).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)

        content = self.render_script(description)
        with open(target, 'w') as f:
            f.write(content)
        os.chmod(target, 0o755)

        self._consumed = True
        logger.info(f"Teardown script written to {target} ({len(self._steps)} step(s))")
        return target

    def _ensure_not_consumed(self) -> None:
        if self._consumed:
            raise RuntimeError("Rollback ledger has already been consumed")
