"""
Base provider interface for triage providers.

A triage provider hands the prepared prompt and run files to an external
coding agent and returns its report.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 600_000


class ProviderError(Exception):
    """A provider could not produce a report."""


class ProviderTimeoutError(ProviderError):
    """The provider process outlived its timeout and was killed."""


class ProviderExitError(ProviderError):
    """The provider process exited non-zero."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


@dataclass
class ProviderRunRequest:
    """
    Inputs for one provider invocation.

    Attributes:
        run_id: Triage run this invocation belongs to.
        prompt: Short instruction passed on the command line.
        alert_context: camelCase alert payload.
        attachments: Run files (alert.json, prompt.txt, ...).
        working_dir: Repository (or repo root) the agent may read.
    """

    run_id: str
    prompt: str
    working_dir: str
    alert_context: dict[str, Any] = field(default_factory=dict)
    attachments: list[str] = field(default_factory=list)


@dataclass
class ProviderResult:
    report_markdown: str
    session_id: str | None = None
    session_url: str | None = None
    raw_output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reportMarkdown": self.report_markdown,
            "sessionId": self.session_id,
            "sessionUrl": self.session_url,
        }


class BaseTriageProvider(ABC):
    """
    Abstract base class for triage providers.

    Subclasses implement ``execute()``; callers use ``run()``, which adds
    timing, logging and error normalization.
    """

    name: str = "base"
    description: str = "Base triage provider"

    def __init__(self, timeout_ms: int | None = None):
        self.timeout_ms = (
            timeout_ms
            if timeout_ms is not None
            else int(getattr(settings, "TRIAGE_PROVIDER_TIMEOUT_MS", DEFAULT_TIMEOUT_MS))
        )

    @abstractmethod
    def execute(self, request: ProviderRunRequest) -> ProviderResult:
        """Invoke the agent and return its report."""
        ...

    def run(self, request: ProviderRunRequest) -> ProviderResult:
        """
        Run the provider.

        Raises:
            ProviderError: On spawn failure, timeout or non-zero exit.
        """
        start = time.perf_counter()
        logger.info(
            "[%s] Provider %s starting (timeout %sms)",
            request.run_id,
            self.name,
            self.timeout_ms,
            extra={"run_id": request.run_id, "provider": self.name},
        )
        try:
            result = self.execute(request)
        except ProviderError:
            logger.warning(
                "[%s] Provider %s failed after %.1fs",
                request.run_id,
                self.name,
                time.perf_counter() - start,
                exc_info=True,
            )
            raise
        except OSError as exc:
            raise ProviderError(f"{self.name} could not be started: {exc}") from exc

        logger.info(
            "[%s] Provider %s finished in %.1fs (report %d chars, session %s)",
            request.run_id,
            self.name,
            time.perf_counter() - start,
            len(result.report_markdown or ""),
            result.session_id or "(none)",
        )
        return result
