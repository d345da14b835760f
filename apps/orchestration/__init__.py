"""
Triage Orchestration app.

Drives the lifecycle of alert triage:
scheduler tick → alert discovery → evidence → provider → persisted report

Key concepts:
- One active scheduler cycle across all processes (database lease)
- Bounded catch-up after missed ticks
- TriageRun state machine: RUNNING → COMPLETE | FAILED
- Monitoring signals at tick, stage and run boundaries
"""

default_app_config = "apps.orchestration.apps.OrchestrationConfig"
