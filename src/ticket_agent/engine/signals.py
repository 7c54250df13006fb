"""Extract control signals from raw agent output."""

from __future__ import annotations

import re

from ticket_agent.engine.models import AgentSignals

_PROMISE_RE = re.compile(r"<promise>(.*?)</promise>", re.DOTALL)
_CLARIFICATION_RE = re.compile(r"<clarification>(.*?)</clarification>", re.DOTALL)
_PERMISSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"requested permissions? to (?:use|run) (?P<command>.+?),? but you haven'?t granted it",
        re.IGNORECASE,
    ),
    re.compile(
        r"permission (?:denied|required) for (?:command|tool):?\s*`?(?P<command>[^`\n]+?)`?\s*$",
        re.IGNORECASE | re.MULTILINE,
    ),
)
_PR_URL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/\d+"),
    re.compile(r"https://gitlab\.com/(?:[^/\s]+/)+-/merge_requests/\d+"),
)
_PR_NUMBER_RE = re.compile(r"/(?:pull|merge_requests)/(\d+)")


def parse_promise(output: str) -> str | None:
    match = _PROMISE_RE.search(output)
    return match.group(1).strip() if match else None


def parse_clarification(output: str) -> str | None:
    match = _CLARIFICATION_RE.search(output)
    if match is None:
        return None
    return match.group(1).strip() or None


def parse_permission_request(output: str) -> str | None:
    """Return the blocked command the agent asked permission for."""

    for pattern in _PERMISSION_PATTERNS:
        match = pattern.search(output)
        if match is not None:
            command = match.group("command").strip()
            if command:
                return command
    return None


def extract_pr_url(output: str) -> str | None:
    for pattern in _PR_URL_PATTERNS:
        match = pattern.search(output)
        if match is not None:
            return match.group(0)
    return None


def extract_pr_number(pr_url: str) -> int | None:
    match = _PR_NUMBER_RE.search(pr_url)
    return int(match.group(1)) if match else None


def parse_signals(output: str, completion_promise: str | None) -> AgentSignals:
    """Run every extractor independently.

    Priority between signals is applied by the execution loop, not here.
    """

    signals = AgentSignals()

    if completion_promise:
        signals.has_completion_promise = parse_promise(output) == completion_promise

    question = parse_clarification(output)
    if question:
        signals.needs_clarification = True
        signals.clarification_question = question

    command = parse_permission_request(output)
    if command:
        signals.needs_permission = True
        signals.permission_request = command

    pr_url = extract_pr_url(output)
    if pr_url:
        signals.pr_created = True
        signals.pr_url = pr_url
        signals.pr_number = extract_pr_number(pr_url)

    return signals
