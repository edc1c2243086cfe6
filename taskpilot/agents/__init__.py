"""
taskpilot Agent Runner

Launches the coding-agent CLI against a prompt file inside a worktree.
The agent is a black box: it consumes a prompt and emits free text.
Completion is detected purely textually via a marker in the transcript.
"""

from __future__ import annotations

import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

from taskpilot.agents.learnings import extract_learnings
from taskpilot.config_loader import AgentConfig

_ITERATION_RE = re.compile(r"Iteration (\d+)/\d+")


class AgentError(Exception):
    pass


class AgentTimeoutError(AgentError):
    pass


@dataclass
class AgentRunResult:
    success: bool
    output: str
    completed: bool
    iterations_used: int = 0


class AgentRunner:
    """
    One agent invocation.

    `on_output` receives every transcript line as it arrives, which is how
    the executor mirrors the transcript into its execution log.
    """

    def __init__(
        self,
        working_dir: Path,
        prompt_file: Path,
        config: AgentConfig | None = None,
        on_output: Callable[[str], None] | None = None,
    ):
        self.working_dir = working_dir
        self.prompt_file = prompt_file
        self.config = config or AgentConfig()
        self.on_output = on_output

    def build_command(self, prompt: str, max_iterations: int) -> list[str]:
        values = {
            "prompt": prompt,
            "prompt_file": str(self.prompt_file),
            "max_iterations": str(max_iterations),
            "allowed_tools": ",".join(self.config.allowed_tools),
        }
        return [arg.format(**values) for arg in self.config.command]

    def run(self, max_iterations: int = 10) -> AgentRunResult:
        prompt = self.prompt_file.read_text(encoding="utf-8")
        cmd = self.build_command(prompt, max_iterations)

        logger.info(
            f"[AGENT] Running {cmd[0]} in {self.working_dir} "
            f"(max iterations {max_iterations}, timeout {self.config.timeout_seconds:.0f}s)"
        )

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.working_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise AgentError(f"Agent command not found: {cmd[0]}") from e

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            proc.kill()

        watchdog = threading.Timer(self.config.timeout_seconds, _kill)
        watchdog.daemon = True
        watchdog.start()

        lines: list[str] = []
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                line = line.rstrip("\n")
                lines.append(line)
                logger.debug(f"[AGENT] {line}")
                if self.on_output:
                    self.on_output(line)
            exit_code = proc.wait()
        finally:
            watchdog.cancel()

        if timed_out.is_set():
            minutes = self.config.timeout_seconds / 60
            raise AgentTimeoutError(f"Agent execution timed out after {minutes:g} minutes")

        output = "\n".join(lines)
        iterations = _ITERATION_RE.findall(output)

        return AgentRunResult(
            success=exit_code == 0,
            output=output,
            completed=self.config.completion_marker in output,
            iterations_used=int(iterations[-1]) if iterations else 0,
        )

    @staticmethod
    def extract_learnings(text: str) -> list[str]:
        return extract_learnings(text)


__all__ = [
    "AgentError",
    "AgentRunResult",
    "AgentRunner",
    "AgentTimeoutError",
    "extract_learnings",
]
