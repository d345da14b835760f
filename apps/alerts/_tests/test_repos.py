"""Tests for local repository resolution."""

import os
import tempfile

from django.test import SimpleTestCase

from apps.alerts.repos import (
    extract_repo_name_from_monitor_name,
    parse_service_repo_map,
    resolve_repo_path,
)


def _checkout(root, name):
    path = os.path.join(root, name)
    os.makedirs(os.path.join(path, ".git"))
    return path


class ServiceRepoMapTests(SimpleTestCase):
    def test_json_string(self):
        assert parse_service_repo_map('{"Checkout": "/src/checkout", "bad": 1}') == {"checkout": "/src/checkout"}

    def test_invalid_json_is_ignored(self):
        assert parse_service_repo_map("{not json") == {}
        assert parse_service_repo_map('["a"]') == {}


class ResolveRepoPathTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = self.tmp.name

    def _resolve(self, **kwargs):
        defaults = {
            "service": None,
            "repo_hint": None,
            "source_repo": None,
            "monitor_name": None,
            "repo_root": self.root,
            "repo_map": {},
        }
        defaults.update(kwargs)
        return resolve_repo_path(**defaults)

    def test_repo_map_first(self):
        mapped = _checkout(self.root, "mapped")
        _checkout(self.root, "checkout")
        assert self._resolve(service="Checkout", repo_map={"checkout": mapped}) == mapped

    def test_git_checkout_under_root(self):
        path = _checkout(self.root, "billing")
        assert self._resolve(service="Billing") == path

    def test_directory_without_git_is_ignored(self):
        os.makedirs(os.path.join(self.root, "ledger"))
        assert self._resolve(service="ledger") is None

    def test_guess_from_monitor_name_with_org(self):
        path = _checkout(self.root, "acme-search-api")
        assert self._resolve(monitor_name="[prd] search-api latency", default_org="acme") == path

    def test_name_extraction(self):
        assert extract_repo_name_from_monitor_name("[prd] Payments-Worker backlog") == "payments-worker"
        assert extract_repo_name_from_monitor_name("P1 prd disk full") == "disk"
        assert extract_repo_name_from_monitor_name("") is None
