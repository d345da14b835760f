"""Tests for triage providers and the registry."""

import json
import os
import tempfile
from unittest.mock import patch

from django.test import SimpleTestCase, override_settings

from apps.intelligence.providers import (
    CodexTriageProvider,
    MockTriageProvider,
    OpenCodeTriageProvider,
    ProviderError,
    ProviderExitError,
    ProviderRunRequest,
    ProviderTimeoutError,
    configured_provider_name,
    get_configured_provider,
    get_provider,
    list_providers,
)
from apps.intelligence.providers.mock import MOCK_REPORT
from apps.intelligence.providers.opencode import (
    NO_RESPONSE,
    encode_repo_path,
    extract_text,
    parse_json_lines,
)
from apps.intelligence.providers.output import find_session_id, lookup
from apps.intelligence.providers.supervised import ProcessResult


def _request(**overrides):
    data = {"run_id": "run-1", "prompt": "Triage this alert.", "working_dir": "/tmp"}
    data.update(overrides)
    return ProviderRunRequest(**data)


class RegistryTests(SimpleTestCase):
    def test_list_providers(self):
        assert list_providers() == ["mock", "codex", "opencode"]

    def test_unknown_provider_raises(self):
        with self.assertRaises(KeyError):
            get_provider("gemini")

    def test_get_provider_passes_kwargs(self):
        provider = get_provider("mock", session_id="s-1", timeout_ms=5)
        assert isinstance(provider, MockTriageProvider)
        assert provider.timeout_ms == 5

    @override_settings(TRIAGE_PROVIDER="Codex")
    def test_configured_provider_is_case_insensitive(self):
        assert configured_provider_name() == "codex"
        assert isinstance(get_configured_provider(), CodexTriageProvider)

    @override_settings(TRIAGE_PROVIDER="")
    def test_configured_provider_defaults_to_opencode(self):
        assert configured_provider_name() == "opencode"

    @override_settings(TRIAGE_PROVIDER_TIMEOUT_MS=1234)
    def test_timeout_from_settings(self):
        assert MockTriageProvider().timeout_ms == 1234


class MockProviderTests(SimpleTestCase):
    def test_returns_fixed_report(self):
        result = MockTriageProvider().run(_request())
        assert result.report_markdown == MOCK_REPORT
        assert result.session_id is None
        assert result.to_dict() == {"reportMarkdown": MOCK_REPORT, "sessionId": None, "sessionUrl": None}


class OutputHelperTests(SimpleTestCase):
    def test_lookup_dotted_path(self):
        assert lookup({"a": {"b": "c"}}, "a.b") == "c"
        assert lookup({"a": "x"}, "a.b") is None

    def test_find_session_id_skips_noise(self):
        output = "starting...\n[1, 2]\n" + json.dumps({"metadata": {"session_id": "abc"}}) + "\n"
        assert find_session_id(output, ["session_id", "metadata.session_id"]) == "abc"


class OpenCodeParsingTests(SimpleTestCase):
    def test_extract_text_variants(self):
        assert extract_text({"role": "assistant", "content": "a"}) == "a"
        assert extract_text({"message": {"role": "assistant", "content": "b"}}) == "b"
        assert extract_text({"type": "text", "text": "c"}) == "c"
        assert extract_text({"type": "content_block_delta", "delta": {"text": "d"}}) == "d"
        assert extract_text({"type": "text_part", "part": {"type": "text", "text": "e"}}) == "e"

    def test_metadata_events_carry_no_text(self):
        assert extract_text({"type": "tool_call", "text": "ls -la"}) is None
        assert extract_text({"role": "user", "content": "prompt"}) is None

    def test_parse_json_lines_concatenates_text(self):
        output = "\n".join(
            [
                json.dumps({"type": "session_info", "sessionID": "ses_1"}),
                "not json",
                json.dumps({"type": "text", "text": "## Summary\n"}),
                json.dumps({"type": "tool_call", "text": "rg foo"}),
                json.dumps({"type": "text", "part": {"type": "text", "text": "Root cause."}, "sessionID": "ses_2"}),
            ]
        )
        parsed = parse_json_lines(output)
        assert parsed.session_id == "ses_1"
        assert parsed.assistant_text == "## Summary\nRoot cause."

    def test_parse_json_lines_without_text(self):
        parsed = parse_json_lines("")
        assert parsed.session_id is None
        assert parsed.assistant_text is None


class OpenCodeProviderTests(SimpleTestCase):
    def _provider(self, **kwargs):
        kwargs.setdefault("bin", "opencode")
        kwargs.setdefault("model", "")
        kwargs.setdefault("variant", "")
        kwargs.setdefault("web_url", "")
        return OpenCodeTriageProvider(timeout_ms=1000, **kwargs)

    def test_build_args(self):
        provider = self._provider(model="anthropic/sonnet", web_url="http://localhost:4096")
        args = provider.build_args(_request(attachments=["/runs/r/alert.json", "/runs/r/prompt.txt"]))
        assert args[:4] == ["opencode", "run", "--format", "json"]
        assert args[args.index("--model") + 1] == "anthropic/sonnet"
        assert args[args.index("--attach") + 1] == "http://localhost:4096"
        assert args[args.index("--file") + 1 : args.index("--")] == ["/runs/r/alert.json", "/runs/r/prompt.txt"]
        assert args[-1] == "Triage this alert."
        assert "--variant" not in args

    def test_session_url_needs_web_url(self):
        assert self._provider().session_url("ses_1", "/repo") is None
        provider = self._provider(web_url="http://localhost:4096/")
        assert provider.session_url("ses_1", "/repo") == (
            f"http://localhost:4096/{encode_repo_path('/repo')}/session/ses_1"
        )
        assert "=" not in encode_repo_path("/a")

    @patch("apps.intelligence.providers.opencode.SupervisedProcess")
    def test_execute_parses_output(self, process_cls):
        process_cls.return_value.run.return_value = ProcessResult(
            stdout=json.dumps({"sessionID": "ses_9", "type": "text", "text": "Report"}),
            stderr="",
            returncode=0,
            elapsed=1.0,
        )
        result = self._provider(web_url="http://oc").run(_request())
        assert result.report_markdown == "Report"
        assert result.session_id == "ses_9"
        assert result.session_url.endswith("/session/ses_9")
        env = process_cls.call_args.kwargs["env"]
        assert "OPENCODE_SERVER_PASSWORD" not in env

    @patch("apps.intelligence.providers.opencode.SupervisedProcess")
    def test_execute_without_text_uses_placeholder(self, process_cls):
        process_cls.return_value.run.return_value = ProcessResult(stdout="", stderr="", returncode=0, elapsed=0.1)
        assert self._provider().run(_request()).report_markdown == NO_RESPONSE

    def test_timeout_is_reported(self):
        with tempfile.TemporaryDirectory() as tmp:
            script = os.path.join(tmp, "opencode")
            with open(script, "w") as f:
                f.write("#!/bin/sh\necho loading >&2\nsleep 30\n")
            os.chmod(script, 0o755)
            provider = OpenCodeTriageProvider(
                bin=script, model="", variant="", web_url="", timeout_ms=300, heartbeat_interval=0.1
            )
            with self.assertRaises(ProviderTimeoutError) as ctx:
                provider.run(_request(working_dir=tmp))
        assert "timed out after 300ms" in str(ctx.exception)

    def test_missing_binary_is_provider_error(self):
        provider = self._provider(bin="definitely-not-a-real-binary-xyz")
        with self.assertRaises(ProviderError):
            provider.run(_request())


class CodexProviderTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.prompt_file = os.path.join(self.tmp.name, "prompt.txt")
        with open(self.prompt_file, "w") as f:
            f.write("full prompt")
        self.report_file = os.path.join(self.tmp.name, "codex_report.md")

    def _request(self):
        return _request(working_dir=self.tmp.name, attachments=[os.path.join(self.tmp.name, "alert.json"), self.prompt_file])

    def _write_report(self, *args, **kwargs):
        with open(self.report_file, "w") as f:
            f.write("# Codex report")
        return ProcessResult(stdout=json.dumps({"session_id": "cx-1"}), stderr="", returncode=0, elapsed=0.1)

    def test_build_args(self):
        provider = CodexTriageProvider(bin="codex", model="gpt-5", allow_fallback=True)
        args = provider.build_args("/repo", "/runs/r/codex_report.md", with_model=True)
        assert args[:2] == ["codex", "exec"]
        assert args[args.index("-s") + 1] == "read-only"
        assert args[args.index("--output-last-message") + 1] == "/runs/r/codex_report.md"
        assert args[-2:] == ["--model", "gpt-5"]
        assert "--model" not in provider.build_args("/repo", "/out", with_model=False)

    def test_reads_report_and_session(self):
        provider = CodexTriageProvider(bin="codex", model="", allow_fallback=True)
        with patch.object(provider, "_invoke", side_effect=self._write_report) as invoke:
            result = provider.run(self._request())
        assert result.report_markdown == "# Codex report"
        assert result.session_id == "cx-1"
        prompt_text = invoke.call_args.args[1]
        assert prompt_text == "full prompt"
        assert invoke.call_args.args[2] == self.report_file

    def test_falls_back_to_default_model(self):
        provider = CodexTriageProvider(bin="codex", model="gpt-5", allow_fallback=True)
        side_effect = [ProviderExitError("bad model", 1), self._write_report()]
        with patch.object(provider, "_invoke", side_effect=side_effect) as invoke:
            result = provider.run(self._request())
        assert result.report_markdown == "# Codex report"
        assert [c.kwargs["with_model"] for c in invoke.call_args_list] == [True, False]

    def test_no_fallback_without_model(self):
        provider = CodexTriageProvider(bin="codex", model="", allow_fallback=True)
        with patch.object(provider, "_invoke", side_effect=ProviderTimeoutError("slow")):
            with self.assertRaises(ProviderTimeoutError):
                provider.run(self._request())

    def test_fallback_disabled(self):
        provider = CodexTriageProvider(bin="codex", model="gpt-5", allow_fallback=False)
        with patch.object(provider, "_invoke", side_effect=ProviderExitError("bad model", 1)) as invoke:
            with self.assertRaises(ProviderExitError):
                provider.run(self._request())
        assert invoke.call_count == 1

    def test_exit_error_from_real_process(self):
        script = os.path.join(self.tmp.name, "codex")
        with open(script, "w") as f:
            f.write("#!/bin/sh\necho 'auth required' >&2\nexit 2\n")
        os.chmod(script, 0o755)
        provider = CodexTriageProvider(bin=script, model="", allow_fallback=False, timeout_ms=5000)
        with self.assertRaises(ProviderExitError) as ctx:
            provider.run(self._request())
        assert ctx.exception.returncode == 2
        assert "auth required" in str(ctx.exception)

    def test_timeout_reports_last_stderr(self):
        script = os.path.join(self.tmp.name, "codex")
        with open(script, "w") as f:
            f.write("#!/bin/sh\necho 'waiting for sandbox' >&2\nsleep 30\n")
        os.chmod(script, 0o755)
        provider = CodexTriageProvider(bin=script, model="", allow_fallback=False, timeout_ms=500)
        with self.assertRaises(ProviderTimeoutError) as ctx:
            provider.run(self._request())
        assert "codex timed out after 500ms" in str(ctx.exception)
        assert "Last stderr: waiting for sandbox" in str(ctx.exception)
