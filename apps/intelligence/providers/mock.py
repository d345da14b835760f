"""Mock provider used when no agent CLI is configured, and in tests."""

from apps.intelligence.providers.base import BaseTriageProvider, ProviderResult, ProviderRunRequest

MOCK_REPORT = (
    "Mock triage report. Configure OpenCode or Codex to get a real analysis. "
    "No actions were performed."
)


class MockTriageProvider(BaseTriageProvider):
    name = "mock"
    description = "Returns a fixed report without running anything"

    def __init__(self, report_markdown: str = MOCK_REPORT, session_id: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.report_markdown = report_markdown
        self.session_id = session_id

    def execute(self, request: ProviderRunRequest) -> ProviderResult:
        return ProviderResult(report_markdown=self.report_markdown, session_id=self.session_id)
