"""
Evidence steps, one class per diagnostic.

Each step looks at a single source (git, ripgrep, kubectl, the GitHub CLI,
Datadog logs, runbooks, Confluence, Jira). A step whose prerequisite is
missing returns a skipped outcome instead of attempting the call.
"""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from typing import Any

from django.utils import timezone

from apps.alerts.http import HttpError, request_json, request_text
from apps.evidence.base import BaseEvidenceStep, EvidenceContext, StepOutcome
from apps.evidence.commands import (
    error_message,
    extract_runbook_links,
    has_command,
    parse_rg_matches,
    run_command,
    safe_json_loads,
)

YAML_GLOB = "**/*.{yaml,yml}"

DEFAULT_SCAN_PATTERNS = [
    {
        "name": "kinds",
        "rg": (
            r"kind:\s*(HorizontalPodAutoscaler|PodDisruptionBudget|Kustomization|HelmRelease"
            r"|HelmRepository|GitRepository|ImagePolicy|ImageAutomation|ImageRepository)"
        ),
    },
    {"name": "replicas", "rg": r"(minReplicas|maxReplicas|replicas)\s*:\s*\d+"},
]

CONFIG_FILE_HINTS = re.compile(r"hpa|pdb|kustom|flux|helm|deployment|values")
GITHUB_URL = re.compile(r"github\.com/([^/]+)/([^/\s]+)")
GITHUB_REMOTE = re.compile(r"github\.com[:/](.+?)/(.+?)(\.git)?$")

MCP_HINT = "MCP Jira/Confluence tools are available via OpenCode CLI."
JIRA_MCP_HINT = "MCP Jira tools are available via OpenCode CLI."


def _json_dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _repo_missing(ctx: EvidenceContext) -> bool:
    return not ctx.repo_path or not os.path.exists(ctx.repo_path)


class CloneRepoStep(BaseEvidenceStep):
    step_id = "clone-repo"
    title = "Clone repository from GitHub"
    timeout = 60

    def collect(self, ctx):
        match = GITHUB_URL.search(ctx.alert.repo_url or "")
        if not match:
            return StepOutcome.skip("Invalid GitHub URL; cannot clone.")
        owner, repo = match.group(1), match.group(2)
        if repo.endswith(".git"):
            repo = repo[: -len(".git")]
        target = os.path.join(ctx.repo_root, repo)
        if os.path.exists(target):
            ctx.repo_path = target
            return StepOutcome(summary=f"Repo already exists at {target}.")

        result = run_command("gh", ["repo", "clone", f"{owner}/{repo}", target], timeout=self.timeout)
        if not result.ok:
            raise RuntimeError(f"Git clone failed: {result.stderr}")
        ctx.repo_path = target
        return StepOutcome(summary=f"Cloned {owner}/{repo} to {target}.")


class RepoStatusStep(BaseEvidenceStep):
    step_id = "repo-status"
    title = "Repo status & recent commits"

    def collect(self, ctx):
        if _repo_missing(ctx):
            context = ", ".join(
                part
                for part in (
                    f"service: {ctx.service}" if ctx.service else None,
                    f"monitor: {ctx.monitor_name}" if ctx.monitor_name else None,
                    f"repo URL: {ctx.alert.repo_url}" if ctx.alert.repo_url else None,
                )
                if part
            )
            return StepOutcome.skip(
                f"Repo path not found; skipping git history. Context: {context or 'none'}."
            )
        status = run_command("git", ["-C", ctx.repo_path, "status", "-sb"])
        log = run_command(
            "git",
            [
                "-C",
                ctx.repo_path,
                "log",
                "-n",
                str(ctx.scan_commits),
                "--date=short",
                "--pretty=format:%h %ad %s",
                "--name-status",
            ],
        )
        return StepOutcome(
            artifact_key="git_history",
            output=f"# git status\n{status.stdout}\n\n# git log\n{log.stdout}",
            summary=f"Captured last {ctx.scan_commits} commits.",
        )


class RepoScanStep(BaseEvidenceStep):
    step_id = "repo-scan"
    title = "Repo config scan (HPA/PDB/Flux/Helm)"

    def collect(self, ctx):
        if _repo_missing(ctx):
            return StepOutcome.skip("Repo path not found; skipping repo scan.")
        if not has_command("rg"):
            return StepOutcome.skip("ripgrep (rg) not available; skipping repo scan.")

        hits = []
        combined = ""
        for pattern in ctx.repo_patterns or DEFAULT_SCAN_PATTERNS:
            result = run_command(
                "rg", ["-n", "--glob", pattern.get("glob") or YAML_GLOB, pattern["rg"], ctx.repo_path]
            )
            if result.stdout:
                combined += f"# rg {pattern['rg']}\n{result.stdout}\n\n"
                hits.extend(parse_rg_matches(result.stdout, ctx.repo_path))
        return StepOutcome(
            artifact_key="repo_scan",
            output=combined,
            files=hits,
            summary=f"{len(hits)} config hits.",
        )


class RepoDiffStep(BaseEvidenceStep):
    step_id = "repo-diff"
    title = "Recent config diffs"
    max_files = 8

    def collect(self, ctx):
        if _repo_missing(ctx):
            return StepOutcome.skip("Repo path not found; skipping diff.")
        revision = f"HEAD~{ctx.scan_commits}..HEAD"
        listing = run_command("git", ["-C", ctx.repo_path, "diff", revision, "--name-only"])
        files = [
            line
            for line in listing.stdout.splitlines()
            if re.search(r"\.ya?ml$", line) and CONFIG_FILE_HINTS.search(line.lower())
        ][: self.max_files]
        ctx.recent_config_files.extend(files)
        if not files:
            return StepOutcome(summary="No recent config diffs detected.")

        output = ""
        for path in files:
            diff = run_command("git", ["-C", ctx.repo_path, "diff", revision, "--", path])
            output += f"# {path}\n{diff.stdout}\n\n"
        return StepOutcome(artifact_key="repo_diff", output=output, summary=f"Diffed {len(files)} files.")


class GithubPrsStep(BaseEvidenceStep):
    step_id = "github-prs"
    title = "GitHub PR context"
    max_matches = 3

    def collect(self, ctx):
        if _repo_missing(ctx):
            return StepOutcome.skip("Repo path not found; skipping PR context.")
        if not has_command("gh"):
            return StepOutcome.skip("GitHub CLI not available; skipping PR context.")
        if not ctx.recent_config_files:
            return StepOutcome.skip("No recent config files to match PRs against.")

        remote = run_command("git", ["-C", ctx.repo_path, "config", "--get", "remote.origin.url"])
        match = GITHUB_REMOTE.search(remote.stdout.strip())
        if not match:
            return StepOutcome(summary="Unable to parse GitHub repo from git remote.")
        owner, repo = match.group(1), match.group(2)

        response = run_command(
            "gh", ["api", f"repos/{owner}/{repo}/pulls", "-f", "state=closed", "-f", "per_page=20"]
        )
        if not response.ok:
            return StepOutcome(summary=f"gh api failed: {response.stderr or response.stdout}")
        prs = safe_json_loads(response.stdout or "[]", [])
        merged = [pr for pr in prs if isinstance(pr, dict) and pr.get("merged_at")]

        matches = []
        for pr in merged[:10]:
            files_response = run_command(
                "gh", ["api", f"repos/{owner}/{repo}/pulls/{pr['number']}/files", "-f", "per_page=100"]
            )
            if not files_response.ok:
                continue
            files = safe_json_loads(files_response.stdout or "[]", [])
            matched = [
                item.get("filename")
                for item in files
                if isinstance(item, dict) and item.get("filename") in ctx.recent_config_files
            ]
            if matched:
                matches.append(
                    {
                        "number": pr.get("number"),
                        "title": pr.get("title"),
                        "merged_at": pr.get("merged_at"),
                        "html_url": pr.get("html_url"),
                        "files": matched,
                    }
                )
            if len(matches) >= self.max_matches:
                break
        return StepOutcome(
            artifact_key="github_prs", output=_json_dump(matches), summary=f"Matched {len(matches)} PRs."
        )


class K8sStateStep(BaseEvidenceStep):
    step_id = "k8s-state"
    title = "Kubernetes live state"

    def collect(self, ctx):
        if not has_command("kubectl"):
            return StepOutcome.skip("kubectl not available; skipping K8s live state.")
        token = ctx.service or "unknown-service"
        deploys = run_command("kubectl", ["get", "deploy,hpa,pdb", "-A"])
        pods = run_command("kubectl", ["get", "pods", "-A"])
        events = run_command("kubectl", ["get", "events", "-A", "--sort-by=.lastTimestamp"])
        events_tail = "\n".join(events.stdout.split("\n")[-50:])
        output = (
            f"# deploy/hpa/pdb (filtered)\n{deploys.stdout}\n\n"
            f"# pods (filtered)\n{pods.stdout}\n\n"
            f"# events (tail)\n{events_tail}"
        )
        filtered = "\n".join(line for line in output.split("\n") if token in line.lower())
        return StepOutcome(
            artifact_key="k8s_state",
            output=filtered or output,
            summary="Captured cluster state and recent events.",
        )


class K8sRolloutStep(BaseEvidenceStep):
    step_id = "k8s-rollout"
    title = "Recent rollout history"

    def collect(self, ctx):
        if not has_command("kubectl"):
            return StepOutcome.skip("kubectl not available; skipping rollout history.")
        if not ctx.service:
            return StepOutcome.skip("Service unknown; skipping rollout history.")
        listing = run_command("kubectl", ["get", "deploy", "-A"])
        targets = [
            line.split()
            for line in listing.stdout.splitlines()
            if ctx.service in line.lower() and len(line.split()) >= 2
        ][:3]
        if not targets:
            return StepOutcome(summary="No deployments matched service for rollout history.")

        output = ""
        for namespace, name, *_ in targets:
            history = run_command("kubectl", ["-n", namespace, "rollout", "history", f"deploy/{name}"])
            output += f"# {namespace}/{name}\n{history.stdout}\n\n"
        return StepOutcome(
            artifact_key="k8s_rollout", output=output, summary=f"Captured {len(targets)} rollout histories."
        )


def _items(raw: str) -> list[dict[str, Any]]:
    data = safe_json_loads(raw or '{"items": []}', {"items": []})
    items = data.get("items") if isinstance(data, dict) else None
    return items or []


def _is_ready(pod: dict[str, Any]) -> bool:
    conditions = (pod.get("status") or {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


class K8sGraphStep(BaseEvidenceStep):
    step_id = "k8s-graph"
    title = "K8s workload → HPA → PDB → pods/events graph"
    kinds = ("deploy", "hpa", "pdb", "pods", "events")

    def collect(self, ctx):
        if not has_command("kubectl"):
            return StepOutcome.skip("kubectl not available; skipping graph.")
        if not ctx.service:
            return StepOutcome.skip("Service unknown; skipping graph.")

        results = {kind: run_command("kubectl", ["get", kind, "-A", "-o", "json"]) for kind in self.kinds}
        if not all(result.ok for result in results.values()):
            return StepOutcome(summary="kubectl error; skipping graph.")
        deploys, hpas, pdbs, pods, events = (_items(results[kind].stdout) for kind in self.kinds)

        service_deploys = [
            d for d in deploys if ctx.service in ((d.get("metadata") or {}).get("name") or "")
        ][:5]
        lines = ["Workload | HPA | PDB | Pods Ready | Events", "--- | --- | --- | --- | ---"]
        for deploy in service_deploys:
            namespace = deploy["metadata"].get("namespace")
            name = deploy["metadata"]["name"]
            labels = ((deploy.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}

            hpa = next(
                (
                    item
                    for item in hpas
                    if (item.get("metadata") or {}).get("namespace") == namespace
                    and ((item.get("spec") or {}).get("scaleTargetRef") or {}).get("kind") == "Deployment"
                    and ((item.get("spec") or {}).get("scaleTargetRef") or {}).get("name") == name
                ),
                None,
            )
            pdb = next(
                (
                    item
                    for item in pdbs
                    if (item.get("metadata") or {}).get("namespace") == namespace
                    and all(
                        labels.get(key) == value
                        for key, value in (
                            ((item.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
                        ).items()
                    )
                ),
                None,
            )
            pod_list = [
                pod
                for pod in pods
                if (pod.get("metadata") or {}).get("namespace") == namespace
                and name in ((pod.get("metadata") or {}).get("name") or "")
            ]
            ready = sum(1 for pod in pod_list if _is_ready(pod))
            event_count = sum(
                1
                for event in events
                if (event.get("involvedObject") or {}).get("namespace") == namespace
                and name in str((event.get("involvedObject") or {}).get("name") or "")
            )
            lines.append(
                f"{namespace}/{name} | {hpa['metadata']['name'] if hpa else '-'} | "
                f"{pdb['metadata']['name'] if pdb else '-'} | {ready}/{len(pod_list)} | {event_count}"
            )
        return StepOutcome(
            artifact_key="k8s_graph",
            output="\n".join(lines),
            summary=f"Graph for {len(service_deploys)} workloads.",
        )


class DatadogLogsStep(BaseEvidenceStep):
    step_id = "datadog-logs"
    title = "Datadog logs (recent)"
    window = timedelta(minutes=30)
    timeout = 10

    def build_query(self, ctx: EvidenceContext) -> str:
        # Monitor queries carry syntax the logs search API rejects, so search
        # on service/env/status instead.
        parts = []
        if ctx.service:
            parts.append(f"service:{ctx.service}")
        if ctx.alert.environment:
            parts.append(f"env:{ctx.alert.environment}")
        parts.append("status:error")
        return " ".join(parts)

    def collect(self, ctx):
        if not ctx.datadog_api_key or not ctx.datadog_app_key:
            return StepOutcome.skip("Datadog keys missing; skipping logs.")
        query = self.build_query(ctx)
        until = timezone.now()
        try:
            data = request_json(
                f"https://api.{ctx.datadog_site}/api/v2/logs/events/search",
                method="POST",
                payload={
                    "filter": {
                        "query": query,
                        "from": (until - self.window).isoformat(),
                        "to": until.isoformat(),
                    },
                    "sort": "-timestamp",
                    "page": {"limit": 5},
                },
                headers={"DD-API-KEY": ctx.datadog_api_key, "DD-APPLICATION-KEY": ctx.datadog_app_key},
                timeout=self.timeout,
            )
        except HttpError as e:
            raise RuntimeError(f"Datadog logs failed ({e.status}): {e} - {e.body[:500]}") from e
        logs = (data or {}).get("data") or []
        return StepOutcome(
            artifact_key="datadog_logs",
            output=_json_dump(logs[:5]),
            summary=f"Fetched {len(logs)} recent error logs (query: {query}).",
        )


class RunbookStep(BaseEvidenceStep):
    step_id = "runbook"
    title = "Runbook excerpts"
    timeout = 8
    excerpt_chars = 1000

    def collect(self, ctx):
        links = extract_runbook_links(ctx.alert.monitor_message)
        if not links:
            return StepOutcome.skip("No runbook links found in monitor message.")
        output = ""
        for link in links[:2]:
            try:
                text = request_text(link, timeout=self.timeout)
                output += f"# {link}\n{text[: self.excerpt_chars]}\n\n"
            except HttpError as e:
                output += f"# {link}\nFailed to fetch: {error_message(e)}\n\n"
        return StepOutcome(artifact_key="runbook", output=output, summary=f"Fetched {len(links)} runbook links.")


class ConfluenceStep(BaseEvidenceStep):
    step_id = "confluence"
    title = "Confluence search snippets"
    timeout = 10

    def collect(self, ctx):
        creds = ctx.confluence
        if not creds.complete:
            return StepOutcome.skip("Confluence credentials missing; skipping.")
        url = creds.base_url.rstrip("/")
        if "/rest/api/search" not in url:
            url = f"{url}/rest/api/search"
        try:
            data = request_json(
                url,
                params={"cql": f'text ~ "{ctx.service or ctx.monitor_name}"', "limit": 3},
                auth=(creds.user, creds.token),
                timeout=self.timeout,
            )
        except HttpError as e:
            if e.status in (400, 404):
                return StepOutcome.skip(
                    f"Confluence API returned {e.status}. Check ATLASSIAN_BASE_URL is correct. "
                    "For Atlassian Cloud, use https://your-domain.atlassian.net (with /wiki suffix). "
                    f"Skipping this step; {MCP_HINT}"
                )
            raise
        results = (data or {}).get("results") or []
        pages = []
        for item in results:
            links = item.get("_links") or {}
            url = f"{links['base']}{links.get('webui') or ''}" if links.get("base") else links.get("webui")
            pages.append({"title": (item.get("content") or {}).get("title"), "url": url})
        return StepOutcome(artifact_key="confluence", output=_json_dump(pages), summary=f"Found {len(results)} pages.")


class JiraStep(BaseEvidenceStep):
    step_id = "jira"
    title = "Jira search snippets"
    timeout = 10

    def _search(self, url: str, jql: str, creds) -> Any:
        return request_json(
            url, params={"jql": jql, "maxResults": 3}, auth=(creds.user, creds.token), timeout=self.timeout
        )

    def collect(self, ctx):
        creds = ctx.jira
        if not creds.complete:
            return StepOutcome.skip("Jira credentials missing; skipping.")
        # Jira lives at the site root, not under the Confluence /wiki path.
        base = re.sub(r"/wiki/?$", "", creds.base_url).rstrip("/")
        jql = f'text ~ "{ctx.service or ctx.monitor_name}" ORDER BY updated DESC'

        try:
            data = self._search(f"{base}/rest/api/3/search/jql", jql, creds)
        except HttpError as v3:
            if v3.status == 410:
                return StepOutcome.skip(
                    "Jira API returned 410 Gone. Check ATLASSIAN_BASE_URL points to a valid Jira "
                    "instance (not Confluence). For Atlassian Cloud, use "
                    f"https://your-domain.atlassian.net (no /wiki suffix). Skipping; {JIRA_MCP_HINT}"
                )
            if v3.status in (400, 404):
                return StepOutcome.skip(
                    f"Jira API returned {v3.status}. Check ATLASSIAN_BASE_URL is correct. Skipping; {JIRA_MCP_HINT}"
                )
            try:
                data = self._search(f"{base}/rest/api/2/search", jql, creds)
            except HttpError as v2:
                if v2.status == 410:
                    return StepOutcome.skip(
                        f"Jira API returned 410 Gone for both v3 and v2. JIRA_BASE_URL ({base}) does not "
                        f"point to a valid Jira instance. Skipping; {JIRA_MCP_HINT}"
                    )
                if v2.status in (400, 404):
                    return StepOutcome.skip(
                        f"Jira API returned {v2.status}. Check ATLASSIAN_BASE_URL is correct. "
                        f"Skipping; {JIRA_MCP_HINT}"
                    )
                return StepOutcome(
                    summary=(
                        f"Jira search failed: v3 ({v3.status}), v2 ({v2.status}). "
                        f"v3 failed with {v3.status}: {v3}; v2: {v2}"
                    )
                )

        issues = (data or {}).get("issues") or []
        output = [
            {
                "key": issue.get("key"),
                "summary": (issue.get("fields") or {}).get("summary"),
                "status": ((issue.get("fields") or {}).get("status") or {}).get("name"),
            }
            for issue in issues
        ]
        return StepOutcome(artifact_key="jira", output=_json_dump(output), summary=f"Found {len(issues)} issues.")


DEFAULT_STEPS: list[type[BaseEvidenceStep]] = [
    RepoStatusStep,
    RepoScanStep,
    RepoDiffStep,
    GithubPrsStep,
    K8sStateStep,
    K8sRolloutStep,
    K8sGraphStep,
    DatadogLogsStep,
    RunbookStep,
    ConfluenceStep,
    JiraStep,
]
