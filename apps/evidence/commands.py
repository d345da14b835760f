"""
Command and text helpers used by evidence steps.

``run_command`` never raises: failures, missing binaries and timeouts are all
reported through ``CommandResult``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any

from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 12
MAX_OUTPUT = 12_000

URL_PATTERN = re.compile(r"(https?://[^\s)]+)")


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class RepoFileHit:
    """A search hit inside a repository (path relative to the repo, 1-based line)."""

    path: str
    line: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "line": self.line, "text": self.text}


def _decode(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def default_timeout() -> float:
    return float(getattr(settings, "EVIDENCE_COMMAND_TIMEOUT", DEFAULT_TIMEOUT))


def run_command(
    command: str,
    args: list[str],
    *,
    cwd: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command to completion, capturing output."""
    timeout = timeout if timeout is not None else default_timeout()
    try:
        completed = subprocess.run(
            [command, *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=os.environ.copy(),
        )
    except subprocess.TimeoutExpired as e:
        logger.debug("Command timed out after %ss: %s %s", timeout, command, " ".join(args))
        return CommandResult(
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr) or f"Command timed out after {timeout}s",
            exit_code=None,
            timed_out=True,
        )
    except OSError as e:
        return CommandResult(stderr=str(e), exit_code=None)
    return CommandResult(
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        exit_code=completed.returncode,
    )


def has_command(command: str) -> bool:
    return shutil.which(command) is not None


def truncate(value: str, max_length: int | None = None) -> str:
    """Cap ``value`` at ``max_length`` chars, appending a marker with the dropped count."""
    if max_length is None:
        max_length = int(getattr(settings, "EVIDENCE_MAX_OUTPUT", MAX_OUTPUT))
    if len(value) <= max_length:
        return value
    return f"{value[:max_length]}\n...[truncated {len(value) - max_length} chars]"


def safe_json_loads(value: str, fallback: Any) -> Any:
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


def error_message(error: BaseException | str | None) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    return "Unknown error"


def parse_rg_matches(
    output: str, repo_path: str | None = None, strip: bool = True
) -> list[RepoFileHit]:
    """Parse ``rg -n`` output lines (``file:line:text``) into hits.

    ``strip=False`` keeps the line's leading whitespace, which diff builders need.
    """
    hits: list[RepoFileHit] = []
    for line in output.splitlines():
        if not line:
            continue
        parts = line.split(":", 2)
        if len(parts) < 3:
            continue
        file_path, line_str, text = parts
        try:
            line_number = int(line_str)
        except ValueError:
            continue
        relative = os.path.relpath(file_path, repo_path) if repo_path else file_path
        hits.append(RepoFileHit(path=relative, line=line_number, text=text.strip() if strip else text.rstrip()))
    return hits


def extract_logs_query(query: str | None) -> str | None:
    """Pull the search string out of a ``logs("...")`` monitor query."""
    if not query:
        return None
    match = re.search(r'logs\("([\s\S]+?)"\)', query)
    return match.group(1) if match else query


def extract_runbook_links(message: str | None) -> list[str]:
    if not message:
        return []
    return [link for link in URL_PATTERN.findall(message) if "runbook" in link.lower()]
