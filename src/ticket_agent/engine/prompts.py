"""Prompt templates for agent iterations."""

from __future__ import annotations

from ticket_agent.engine.models import TicketComment

DEFAULT_COMPLETION_PROMISE = "TASK COMPLETE"

TASK_PROMPT = """\
# Task: {title}

{description}
{comments_section}
## Instructions

Work on this task iteratively. You have access to the full codebase.
{vcs_hint}

When you have completed the task:
1. Create a PR using `gh pr create`
2. Output: <promise>{completion_promise}</promise>

If you need clarification from the user:
- Output: <clarification>Your specific question here</clarification>
- Then stop and wait for the answer.

Current iteration: {iteration}/{max_iterations}"""

ANSWER_CONTEXT = """\
Previous question: {question}

Human answer: {answer}

Continue working on the task with this information."""

PERMISSION_APPROVED_CONTEXT = """\
The following command was approved: {command}

Please proceed with the task. The command has been approved and you can execute it."""

PERMISSION_DENIED_CONTEXT = """\
The following command was denied: {command}

Please find an alternative approach that doesn't require this command, \
or ask for clarification if you need more information."""

_VCS_HINT_GIT = "Commit your changes with git on the current branch."
_VCS_HINT_JJ = "Use jj for version control (not git directly)."


def build_prompt(  # noqa: PLR0913
    *,
    title: str,
    description: str | None,
    comments: list[TicketComment],
    completion_promise: str | None,
    iteration: int,
    max_iterations: int,
    resume_context: str | None = None,
    use_jj: bool = False,
) -> str:
    """Render the full iteration prompt; pure function of its inputs."""

    comments_section = ""
    if comments:
        lines = ["", "## Comments from ticket", ""]
        for comment in comments:
            lines.append(f"**{comment.author or 'Unknown'}** ({comment.created_at}):")
            lines.append(comment.body)
            lines.append("")
        comments_section = "\n".join(lines)

    prompt = TASK_PROMPT.format(
        title=title,
        description=(description or "").strip() or "No description provided.",
        comments_section=comments_section,
        vcs_hint=_VCS_HINT_JJ if use_jj else _VCS_HINT_GIT,
        completion_promise=completion_promise or DEFAULT_COMPLETION_PROMISE,
        iteration=iteration,
        max_iterations=max_iterations,
    )
    if resume_context:
        return f"{resume_context.strip()}\n\n{prompt}"
    return prompt


def answer_context(question: str | None, answer: str) -> str:
    return ANSWER_CONTEXT.format(question=question or "", answer=answer)


def permission_context(*, approved: bool, command: str) -> str:
    template = PERMISSION_APPROVED_CONTEXT if approved else PERMISSION_DENIED_CONTEXT
    return template.format(command=command)
