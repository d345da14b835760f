"""Tests for alert filter and field extraction helpers."""

from django.test import SimpleTestCase

from apps.alerts.filters import (
    extract_repo_from_message,
    guess_service,
    guess_service_from_name,
    matches_alert_filter,
    matches_team_or_namespace,
    monitor_url,
    parse_alert_states,
    parse_team_filter,
    resolve_priority,
    tag_value,
)


class StateAndTeamParsingTests(SimpleTestCase):
    def test_default_states(self):
        assert parse_alert_states("") == ["alert", "warn", "no_data"]

    def test_custom_states_are_lowercased(self):
        assert parse_alert_states("Alert, No Data ,") == ["alert", "no data"]

    def test_team_filter(self):
        assert parse_team_filter(None) == []
        assert parse_team_filter("Payments,checkout") == ["payments", "checkout"]


class TextFilterTests(SimpleTestCase):
    def test_empty_filter_matches_everything(self):
        assert matches_alert_filter(None, "")
        assert matches_alert_filter("anything", None)

    def test_channel_variants(self):
        for message in ["notify #oncall-pay", "notify @slack-oncall-pay", "slack-oncall-pay", "ONCALL-PAY"]:
            assert matches_alert_filter(message, "#oncall-pay"), message
            assert matches_alert_filter(message, "oncall-pay"), message

    def test_no_message_never_matches_a_filter(self):
        assert not matches_alert_filter(None, "oncall")
        assert not matches_alert_filter("something else", "oncall")


class TeamTagTests(SimpleTestCase):
    def test_no_teams_accepts_all(self):
        assert matches_team_or_namespace([], [])

    def test_team_or_namespace_tag(self):
        assert matches_team_or_namespace(["Team:Payments"], ["payments"])
        assert matches_team_or_namespace(["kube_namespace:payments"], ["payments"])
        assert not matches_team_or_namespace(["team:search", "env:prd"], ["payments"])


class PriorityTests(SimpleTestCase):
    def test_numeric_field(self):
        assert resolve_priority({"priority": 3}) == 3
        assert resolve_priority({"priority": "2 (High)"}) == 2

    def test_falls_back_to_name_then_message(self):
        assert resolve_priority({"priority": None, "name": "[P4] Latency"}) == 4
        assert resolve_priority({"name": "Latency", "message": "Escalate as p2"}) == 2
        assert resolve_priority({"name": "Latency"}) is None

    def test_booleans_are_ignored(self):
        assert resolve_priority({"priority": True, "name": "P1 outage"}) == 1


class ServiceGuessTests(SimpleTestCase):
    def test_tag_wins(self):
        monitor = {"query": 'logs("service:from-query")', "name": "[from-name] errors"}
        assert guess_service(monitor, ["service:from-tag"]) == "from-tag"

    def test_query_then_message_then_name(self):
        assert guess_service({"query": "avg:trace.hits{service:billing-api}"}, []) == "billing-api"
        assert guess_service({"message": 'Check service: "ledger"'}, []) == "ledger"
        assert guess_service({"name": "[prd][P2][checkout-api] errors"}, []) == "checkout-api"

    def test_name_with_only_env_tokens(self):
        assert guess_service_from_name("[prd] errors") == "prd"
        assert guess_service_from_name("no brackets") is None

    def test_tag_value(self):
        assert tag_value(["env:prd", "environment:staging"], "environment") == "staging"
        assert tag_value(["environment:"], "environment") is None


class RepoExtractionTests(SimpleTestCase):
    def test_github_link(self):
        message = "Code: https://github.com/acme/checkout-api). Owner: payments"
        assert extract_repo_from_message(message) == ("checkout-api", "https://github.com/acme/checkout-api")

    def test_repo_hint(self):
        assert extract_repo_from_message("repository = billing.core") == ("billing.core", None)
        assert extract_repo_from_message("nothing here") == (None, None)

    def test_monitor_url(self):
        assert monitor_url("datadoghq.eu", 12) == "https://app.datadoghq.eu/monitors/12"
        assert monitor_url("datadoghq.eu", None) is None
