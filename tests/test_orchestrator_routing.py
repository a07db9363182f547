from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_dispatch.config import DEFAULT_COMMAND_TEMPLATE, Settings
from agent_dispatch.orchestrator.routing import (
    DEFAULT_ROUTE_PRIORITY,
    RoutingPolicy,
    RoutingRule,
    parse_routes,
)

pytestmark = [
    allure.epic("Event Intake"),
    allure.feature("Routing & Configuration"),
]


def test_default_policy_routes_known_event_kinds() -> None:
    policy = RoutingPolicy.default()

    triage = policy.resolve(source="issue_tracker", event_type="issue.created")
    assert triage is not None
    assert triage.task_type == "triage"
    assert triage.priority == 3
    assert triage.requires_repository is False

    review = policy.resolve(source="code_host", event_type="pull_request.opened")
    assert review is not None
    assert review.task_type == "review"
    assert review.requires_repository is True


def test_resolve_is_case_and_whitespace_insensitive() -> None:
    policy = RoutingPolicy.default()
    assert policy.resolve(source=" Issue_Tracker ", event_type="ISSUE.CREATED") is not None


def test_unknown_event_kind_is_unroutable() -> None:
    assert RoutingPolicy.default().resolve(source="chat", event_type="reaction.added") is None


def test_parse_routes_supports_optional_priority_and_repo_flag() -> None:
    rules = parse_routes(" chat:message.mention=analysis , code_host:push=review@1+repo ,")

    assert rules == [
        RoutingRule(
            source="chat",
            event_type="message.mention",
            task_type="analysis",
            priority=DEFAULT_ROUTE_PRIORITY,
        ),
        RoutingRule(
            source="code_host",
            event_type="push",
            task_type="review",
            priority=1,
            requires_repository=True,
        ),
    ]
    assert rules[1].render() == "code_host:push=review@1+repo"


@pytest.mark.parametrize(
    ("spec", "message"),
    [
        ("chat:message.mention", "must contain '='"),
        ("chat=analysis", "source:event_type"),
        ("chat:mention=analysis@high", "must be an integer"),
        ("chat:mention=analysis@-1", ">= 0"),
        ("chat:mention=@2", "empty task type"),
    ],
)
def test_parse_routes_rejects_malformed_entries(spec: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_routes(spec)


def test_duplicate_routes_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate route"):
        RoutingPolicy.from_spec("chat:mention=analysis,CHAT:mention=triage")


def test_settings_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AGENT_DISPATCH_DB_PATH", "AGENT_DISPATCH_CAPACITY", "AGENT_DISPATCH_ROUTES"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_dispatch.db")
    assert settings.admission.capacity == 2
    assert settings.admission.starvation_age_seconds is None
    assert settings.retry.max_retries == 3
    assert settings.retry.backoff_base_seconds == 1.0
    assert settings.retry.backoff_max_seconds == 30.0
    assert settings.dispatch.dedup_window_seconds == 300
    assert settings.supervisor.command_template == DEFAULT_COMMAND_TEMPLATE
    settings.validate()


def test_settings_from_env_reads_overrides(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_CAPACITY", "4")
    monkeypatch.setenv("AGENT_DISPATCH_STARVATION_AGE_SECONDS", "90")
    monkeypatch.setenv("AGENT_DISPATCH_ARCHIVE_ON_SUCCESS", "yes")
    monkeypatch.setenv("AGENT_DISPATCH_RETRY_SEED", "42")
    monkeypatch.setenv("AGENT_DISPATCH_ROUTES", "chat:mention=analysis@1")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.admission.capacity == 4
    assert settings.admission.starvation_age_seconds == 90.0
    assert settings.workspace.archive_on_success is True
    assert settings.retry.seed == 42
    assert [rule.render() for rule in settings.dispatch.routing_policy().rules] == [
        "chat:mention=analysis@1",
    ]


def test_settings_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_ARCHIVE_ON_SUCCESS", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_validate_rejects_zero_capacity() -> None:
    settings = Settings()
    settings.admission.capacity = 0

    with pytest.raises(ValueError, match="AGENT_DISPATCH_CAPACITY"):
        settings.validate()


def test_validate_rejects_bad_routes() -> None:
    settings = Settings()
    settings.dispatch.routes = "nonsense"

    with pytest.raises(ValueError, match="must contain '='"):
        settings.validate()
