"""
taskpilot Quality Gate

Runs install / typecheck / test / lint commands inside a worktree and
returns a structured verdict. Only typecheck and tests gate a commit;
lint is advisory.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from taskpilot.config_loader import QualityConfig


class QualityGateError(Exception):
    pass


class MissingScriptError(QualityGateError):
    """The project defines no script for the requested check."""


@dataclass
class QualityResult:
    typecheck: bool = False
    tests: bool = False
    lint: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.typecheck and self.tests


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


class QualityGate:
    def __init__(self, working_dir: Path, config: QualityConfig | None = None):
        self.working_dir = working_dir
        self.config = config or QualityConfig()

    def run_all(self) -> QualityResult:
        result = QualityResult()

        if not (self.working_dir / self.config.manifest).exists():
            result.errors.append(f"No {self.config.manifest} found")
            return result

        try:
            result.typecheck = self.run_typecheck()
        except QualityGateError as e:
            result.errors.append(f"Typecheck failed: {e}")

        try:
            result.tests = self.run_tests()
        except QualityGateError as e:
            result.errors.append(f"Tests failed: {e}")

        try:
            result.lint = self.run_lint()
        except QualityGateError as e:
            logger.warning(f"[GATE] Lint check skipped or failed: {e}")
            result.lint = True

        logger.info(
            f"[GATE] typecheck={result.typecheck} tests={result.tests} lint={result.lint}"
        )
        return result

    def run_typecheck(self) -> bool:
        try:
            self._check(self.config.typecheck_command, self.config.typecheck_timeout)
        except MissingScriptError:
            logger.info("[GATE] No typecheck script, invoking the type checker directly")
            self._check(self.config.typecheck_fallback_command, self.config.typecheck_timeout)
        return True

    def run_tests(self) -> bool:
        try:
            self._check(
                self.config.test_command,
                self.config.test_timeout,
                env={"CI": "true", "NODE_ENV": "test"},
            )
        except MissingScriptError:
            logger.warning("[GATE] No test script found, skipping tests")
        return True

    def run_lint(self) -> bool:
        try:
            self._check(self.config.lint_command, self.config.lint_timeout)
        except MissingScriptError:
            return True
        except QualityGateError as e:
            logger.warning(f"[GATE] Lint warnings: {e}")
        return True

    def install_dependencies(self) -> None:
        if not (self.working_dir / self.config.manifest).exists():
            logger.info(f"[GATE] No {self.config.manifest}, nothing to install")
            return

        marker = self.working_dir / self.config.dependency_marker
        if marker.exists():
            logger.info("[GATE] Dependencies already installed")
            return

        logger.info(f"[GATE] Installing dependencies: {self.config.install_command}")
        self._check(self.config.install_command, self.config.install_timeout)

    def _check(self, command: str, timeout: float, env: dict[str, str] | None = None) -> None:
        """Run a check command; raise on failure, timeout, or missing script."""
        result = self._run(command, timeout, env)
        if result.returncode == 0:
            logger.debug(f"[GATE] `{command}` ok")
            return

        combined = f"{result.stdout}\n{result.stderr}"
        if self.config.missing_script_marker and self.config.missing_script_marker in combined:
            raise MissingScriptError(f"`{command}`: missing script")
        raise QualityGateError(f"`{command}` exited {result.returncode}: {result.output[-2000:]}")

    def _run(self, command: str, timeout: float, env: dict[str, str] | None = None) -> CommandResult:
        full_env = {**os.environ, **(env or {})}
        try:
            proc = subprocess.run(
                shlex.split(command),
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=full_env,
            )
        except subprocess.TimeoutExpired as e:
            raise QualityGateError(f"`{command}` timed out after {timeout}s") from e
        except FileNotFoundError as e:
            raise QualityGateError(f"`{command}`: executable not found") from e
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)
