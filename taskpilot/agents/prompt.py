"""Prompt file rendering for the coding agent."""

from __future__ import annotations

from pathlib import Path

PROGRESS_CONTEXT_LIMIT = 2000

REQUIREMENTS = """\
- All tests must pass
- Type checking must succeed without errors
- Code must follow existing patterns in the repository
- Changes should be isolated to relevant files only"""


def tail(text: str, limit: int = PROGRESS_CONTEXT_LIMIT) -> str:
    return text[-limit:] if len(text) > limit else text


def render_prompt(
    task_description: str,
    progress_context: str = "",
    repository: str = "",
    completion_marker: str = "<promise>COMPLETE</promise>",
) -> str:
    sections = [f"# Task\n\n{task_description.strip()}\n"]

    if repository:
        sections.append(f"## Context\n\nRepository: {repository}\n")

    sections.append(f"## Requirements\n\n{REQUIREMENTS}\n")

    context = tail(progress_context).strip()
    if context:
        sections.append(f"## Previous Learnings\n\n{context}\n")

    sections.append(
        "## Success Criteria\n\n"
        "When the task is complete and all requirements are met, respond with:\n\n"
        f"{completion_marker}\n"
    )
    sections.append(
        "## Important Notes\n\n"
        "- Read the codebase thoroughly before making changes\n"
        "- Follow existing code patterns and conventions\n"
        "- Test your changes before marking complete\n"
        "- Keep the implementation simple and focused\n"
    )
    return "\n".join(sections)


def write_prompt_file(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
