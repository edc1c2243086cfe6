"""
taskpilot: backlog-driven autonomous coding pipeline.

Two actors:
  - Coordinator: per-project task ledger, dispatch loop, PR + backlog glue
  - Execution Agent: worktree → agent → quality gate → commit → push → callback
"""

__version__ = "0.4.0"
__codename__ = "TASKPILOT"
