"""
OpenCode CLI provider.

Runs ``opencode run --format json`` non-interactively and assembles the
assistant's reply from the JSON event stream.
"""

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any

from django.conf import settings
from django.utils import timezone

from apps.intelligence.providers.base import (
    BaseTriageProvider,
    ProviderExitError,
    ProviderResult,
    ProviderRunRequest,
    ProviderTimeoutError,
)
from apps.intelligence.providers.output import first_value, iter_json_lines
from apps.intelligence.providers.supervised import (
    Heartbeat,
    ProcessExitError,
    ProcessTimeoutError,
    SupervisedProcess,
)

logger = logging.getLogger(__name__)

METADATA_TYPES = frozenset(
    {
        "step_start",
        "step_finish",
        "step_error",
        "run_start",
        "run_finish",
        "run_error",
        "tool_call",
        "tool_result",
        "agent_thought",
        "session_info",
    }
)
SESSION_ID_PATHS = [
    "session_id",
    "sessionId",
    "session",
    "metadata.session_id",
    "part.sessionID",
    "sessionID",
]
# Variables that would make the child attach to the parent's OpenCode server.
SCRUBBED_ENV = ("OPENCODE_SERVER_USERNAME", "OPENCODE_SERVER_PASSWORD", "OPENCODE")
NO_RESPONSE = "No response received from OpenCode."


def extract_text(obj: dict[str, Any]) -> str | None:
    """Assistant-visible text carried by one event, or None."""
    if obj.get("type") in METADATA_TYPES:
        return None
    message = obj.get("message") if isinstance(obj.get("message"), dict) else {}
    delta = obj.get("delta") if isinstance(obj.get("delta"), dict) else {}
    part = obj.get("part") if isinstance(obj.get("part"), dict) else {}
    candidates = [
        (obj.get("role") == "assistant", obj.get("content")),
        (message.get("role") == "assistant", message.get("content")),
        (obj.get("type") == "assistant_message", obj.get("content")),
        (obj.get("type") == "text", obj.get("text")),
        (obj.get("type") == "content_block_delta", delta.get("text")),
        (part.get("type") == "text", part.get("text")),
    ]
    for applies, text in candidates:
        if applies and isinstance(text, str):
            return text
    return None


@dataclass
class ParsedOutput:
    session_id: str | None
    assistant_text: str | None


def parse_json_lines(output: str) -> ParsedOutput:
    session_id = None
    parts = []
    for obj in iter_json_lines(output):
        if session_id is None:
            session_id = first_value(obj, SESSION_ID_PATHS)
        text = extract_text(obj)
        if text:
            parts.append(text)
    return ParsedOutput(session_id=session_id, assistant_text="".join(parts) if parts else None)


def encode_repo_path(path: str) -> str:
    return base64.urlsafe_b64encode(path.encode("utf-8")).decode("ascii").rstrip("=")


class OpenCodeTriageProvider(BaseTriageProvider):
    name = "opencode"
    description = "OpenCode CLI (opencode run)"

    def __init__(
        self,
        bin: str | None = None,
        model: str | None = None,
        variant: str | None = None,
        web_url: str | None = None,
        heartbeat_interval: float = 30.0,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.bin = bin or getattr(settings, "OPENCODE_BIN", "opencode")
        self.model = model if model is not None else getattr(settings, "OPENCODE_MODEL", "")
        self.variant = variant if variant is not None else getattr(settings, "OPENCODE_VARIANT", "")
        self.web_url = web_url if web_url is not None else getattr(settings, "OPENCODE_WEB_URL", "")
        self.heartbeat_interval = heartbeat_interval

    def build_args(self, request: ProviderRunRequest) -> list[str]:
        title = f"Triage {os.path.basename(request.working_dir)} {timezone.now().isoformat()}"
        args = [self.bin, "run", "--format", "json", "--title", title]
        if self.model:
            args += ["--model", self.model]
        if self.variant:
            args += ["--variant", self.variant]
        if self.web_url:
            args += ["--attach", self.web_url]
        if request.attachments:
            args += ["--file", *request.attachments]
        args += ["--", request.prompt]
        return args

    def session_url(self, session_id: str | None, working_dir: str) -> str | None:
        if not session_id or not self.web_url:
            return None
        return f"{self.web_url.rstrip('/')}/{encode_repo_path(working_dir)}/session/{session_id}"

    def execute(self, request: ProviderRunRequest) -> ProviderResult:
        run_id = request.run_id
        env = {key: value for key, value in os.environ.items() if key not in SCRUBBED_ENV}

        def on_heartbeat(beat: Heartbeat) -> None:
            logger.info(
                "[%s] OpenCode heartbeat %ds - stdout: %dB (+%d), stderr: %dB (+%d)",
                run_id,
                beat.elapsed,
                beat.stdout_bytes,
                beat.stdout_delta,
                beat.stderr_bytes,
                beat.stderr_delta,
            )

        def on_stderr(chunk: str) -> None:
            text = chunk.strip()
            if text:
                logger.debug("[%s] OpenCode stderr: %s", run_id, text[:200])

        process = SupervisedProcess(
            self.build_args(request),
            cwd=request.working_dir,
            env=env,
            stdin_text=None,
            timeout=self.timeout_ms / 1000,
            heartbeat_interval=self.heartbeat_interval,
            on_heartbeat=on_heartbeat,
            on_stderr=on_stderr,
        )
        try:
            result = process.run()
        except ProcessTimeoutError as e:
            raise ProviderTimeoutError(
                f"opencode timed out after {self.timeout_ms}ms ({e.elapsed:.1f}s elapsed). "
                f"Last stderr: {e.stderr_tail or '(none)'}"
            ) from e
        except ProcessExitError as e:
            raise ProviderExitError(
                f"opencode exited with code {e.returncode} after {e.elapsed:.1f}s: {e.stderr_tail}",
                e.returncode,
            ) from e

        parsed = parse_json_lines(result.stdout)
        logger.info(
            "[%s] OpenCode parse result: sessionId=%s, assistantText length=%d",
            run_id,
            parsed.session_id or "(none)",
            len(parsed.assistant_text or ""),
        )
        return ProviderResult(
            report_markdown=parsed.assistant_text or NO_RESPONSE,
            session_id=parsed.session_id,
            session_url=self.session_url(parsed.session_id, request.working_dir),
            raw_output=result.stdout,
        )
