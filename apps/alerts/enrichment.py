"""
Best-effort alert enrichment from GitHub and Confluence.

Each enricher returns None when it is disabled, unconfigured or failing;
``enrich_alert`` never raises.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from django.conf import settings

from apps.alerts.dtos import AlertContext
from apps.alerts.http import HttpError, request_json
from apps.evidence.commands import run_command, safe_json_loads

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


def _github_repo_coordinates(alert: AlertContext) -> tuple[str | None, str | None]:
    if alert.repo_url:
        match = re.search(r"github\.com/([^/]+)/([^\s/]+)", alert.repo_url, re.IGNORECASE)
        if match:
            return match.group(1), match.group(2)
    if alert.repo_hint:
        org = getattr(settings, "GITHUB_DEFAULT_ORG", "")
        if org:
            return org, alert.repo_hint
    return None, None


def _gh_api(path: str) -> Any:
    result = run_command("gh", ["api", path, "--hostname", "github.com"], timeout=8)
    if not result.ok:
        raise RuntimeError(result.stderr.strip() or f"gh api {path} failed")
    return safe_json_loads(result.stdout, None)


def enrich_github(alert: AlertContext) -> dict[str, Any] | None:
    if not getattr(settings, "ENRICH_GITHUB", True):
        return None
    owner, repo = _github_repo_coordinates(alert)
    if not owner or not repo:
        return None

    token = getattr(settings, "GITHUB_TOKEN", "")
    paths = {
        "repo": f"repos/{owner}/{repo}",
        "commits": f"repos/{owner}/{repo}/commits?per_page=5",
        "issues": f"repos/{owner}/{repo}/issues?state=open&per_page=5",
    }
    if token:
        headers = {"Authorization": f"Bearer {token}"}
        data = {key: request_json(f"{GITHUB_API}/{path}", headers=headers) for key, path in paths.items()}
    else:
        try:
            data = {key: _gh_api(path) for key, path in paths.items()}
        except RuntimeError as e:
            logger.warning("GitHub CLI enrichment failed: %s", e)
            return None

    repo_data = data["repo"] or {}
    commits = data["commits"] or []
    issues = data["issues"] or []
    latest = commits[0] if commits else None
    open_issues = [issue for issue in issues if not issue.get("pull_request")]
    open_prs = [issue for issue in issues if issue.get("pull_request")]

    return {
        "fullName": repo_data.get("full_name"),
        "description": repo_data.get("description"),
        "defaultBranch": repo_data.get("default_branch"),
        "latestCommit": (
            {
                "sha": latest.get("sha"),
                "message": (latest.get("commit") or {}).get("message"),
                "author": ((latest.get("commit") or {}).get("author") or {}).get("name"),
                "date": ((latest.get("commit") or {}).get("author") or {}).get("date"),
            }
            if latest
            else None
        ),
        "openIssues": [{"title": i.get("title"), "url": i.get("html_url")} for i in open_issues[:3]],
        "openPullRequests": [{"title": p.get("title"), "url": p.get("html_url")} for p in open_prs[:3]],
    }


def confluence_base_url() -> str:
    base = (getattr(settings, "ATLASSIAN_BASE_URL", "") or "").rstrip("/")
    if not base:
        return ""
    return base if base.endswith("/wiki") else f"{base}/wiki"


def enrich_confluence(alert: AlertContext) -> list[dict[str, Any]] | None:
    if not getattr(settings, "ENRICH_CONFLUENCE", True):
        return None
    base_url = confluence_base_url()
    user = getattr(settings, "ATLASSIAN_USER", "")
    token = getattr(settings, "ATLASSIAN_TOKEN", "")
    if not base_url or not user or not token:
        return None

    terms = " ".join(t for t in (alert.service, alert.repo_hint, alert.source_repo) if t)
    if not terms:
        return None
    cql = f'text ~ "{terms}" AND (title ~ runbook OR title ~ incident OR text ~ runbook)'
    data = request_json(
        f"{base_url}/rest/api/search",
        params={"cql": cql, "limit": 5},
        auth=(user, token),
    )
    results = (data or {}).get("results") or []
    return [
        {
            "title": item.get("title"),
            "url": f"{base_url}{item['_links']['webui']}" if (item.get("_links") or {}).get("webui") else None,
        }
        for item in results[:3]
    ]


def enrich_alert(alert: AlertContext) -> tuple[Any, Any]:
    """Return ``(github, confluence)`` enrichment, each None on failure."""
    try:
        github = enrich_github(alert)
    except (HttpError, ValueError, KeyError, AttributeError, TypeError) as e:
        logger.warning("GitHub enrichment failed: %s", e)
        github = None
    try:
        confluence = enrich_confluence(alert)
    except (HttpError, ValueError, KeyError, AttributeError, TypeError) as e:
        logger.warning("Confluence enrichment failed: %s", e)
        confluence = None
    return github, confluence
