"""
Codex CLI provider.

Runs ``codex exec`` read-only against the working directory with the
prompt file on stdin; the final message is written to ``codex_report.md``
next to the prompt.
"""

import logging
import os

from django.conf import settings

from apps.intelligence.providers.base import (
    BaseTriageProvider,
    ProviderExitError,
    ProviderResult,
    ProviderRunRequest,
    ProviderTimeoutError,
)
from apps.intelligence.providers.output import find_session_id
from apps.intelligence.providers.supervised import (
    ProcessExitError,
    ProcessResult,
    ProcessTimeoutError,
    SupervisedProcess,
)

logger = logging.getLogger(__name__)

SESSION_ID_PATHS = [
    "session_id",
    "sessionId",
    "metadata.session_id",
    "metadata.sessionId",
    "session.id",
]
REPORT_FILE = "codex_report.md"


class CodexTriageProvider(BaseTriageProvider):
    name = "codex"
    description = "OpenAI Codex CLI (codex exec)"

    def __init__(
        self,
        bin: str | None = None,
        model: str | None = None,
        allow_fallback: bool | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.bin = bin or getattr(settings, "CODEX_BIN", "codex")
        self.model = model if model is not None else getattr(settings, "CODEX_MODEL", "")
        self.allow_fallback = (
            allow_fallback if allow_fallback is not None else getattr(settings, "CODEX_ALLOW_FALLBACK", True)
        )

    def build_args(self, working_dir: str, output_path: str, with_model: bool) -> list[str]:
        args = [
            self.bin,
            "exec",
            "--skip-git-repo-check",
            "--add-dir",
            working_dir,
            "-s",
            "read-only",
            "--json",
            "--output-last-message",
            output_path,
        ]
        if with_model and self.model:
            args += ["--model", self.model]
        return args

    def _invoke(self, request: ProviderRunRequest, prompt_text: str, output_path: str, with_model: bool) -> ProcessResult:
        process = SupervisedProcess(
            self.build_args(request.working_dir, output_path, with_model),
            cwd=request.working_dir,
            env=os.environ.copy(),
            stdin_text=prompt_text,
            timeout=self.timeout_ms / 1000,
        )
        try:
            return process.run()
        except ProcessTimeoutError as e:
            raise ProviderTimeoutError(
                f"codex timed out after {self.timeout_ms}ms. Last stderr: {e.stderr_tail or '(none)'}"
            ) from e
        except ProcessExitError as e:
            raise ProviderExitError(f"codex exited with code {e.returncode}: {e.stderr_tail}", e.returncode) from e

    def execute(self, request: ProviderRunRequest) -> ProviderResult:
        prompt_file = next(
            (path for path in request.attachments if os.path.basename(path) == "prompt.txt"),
            request.attachments[0] if request.attachments else None,
        )
        if prompt_file:
            with open(prompt_file, encoding="utf-8") as f:
                prompt_text = f.read()
        else:
            prompt_text = request.prompt
        run_dir = os.path.dirname(prompt_file) if prompt_file else request.working_dir
        output_path = os.path.join(run_dir, REPORT_FILE)

        try:
            result = self._invoke(request, prompt_text, output_path, with_model=True)
        except (ProviderTimeoutError, ProviderExitError) as e:
            if not (self.allow_fallback and self.model):
                raise
            logger.warning("[%s] codex with model %s failed (%s); retrying with default model", request.run_id, self.model, e)
            result = self._invoke(request, prompt_text, output_path, with_model=False)

        with open(output_path, encoding="utf-8") as f:
            report = f.read()
        return ProviderResult(
            report_markdown=report,
            session_id=find_session_id(result.stdout, SESSION_ID_PATHS) if result.stdout else None,
            raw_output=result.stdout,
        )
