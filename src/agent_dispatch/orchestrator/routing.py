"""Routing of inbound event kinds to task types."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_ROUTE_PRIORITY = 5

# source:event_type=task_type[@priority][+repo]
DEFAULT_ROUTES_SPEC = ",".join(
    (
        "issue_tracker:issue.created=triage@3",
        "issue_tracker:issue.updated=triage@5",
        "chat:message.mention=analysis@4",
        "code_host:pull_request.opened=review@2+repo",
        "code_host:pull_request.synchronize=review@4+repo",
        "code_host:push=analysis@6+repo",
    ),
)


@dataclass(frozen=True, slots=True)
class RoutingRule:
    """One ``(source, event_type) -> task_type`` mapping."""

    source: str
    event_type: str
    task_type: str
    priority: int = DEFAULT_ROUTE_PRIORITY
    requires_repository: bool = False

    def render(self) -> str:
        rendered = f"{self.source}:{self.event_type}={self.task_type}@{self.priority}"
        if self.requires_repository:
            rendered += "+repo"
        return rendered


class RoutingPolicy:
    """Pure lookup table from event kind to routing rule."""

    def __init__(self, rules: list[RoutingRule] | tuple[RoutingRule, ...]) -> None:
        self._rules: dict[tuple[str, str], RoutingRule] = {}
        for rule in rules:
            key = (_normalize(rule.source), _normalize(rule.event_type))
            if key in self._rules:
                raise ValueError(f"Duplicate route for {rule.source}:{rule.event_type}")
            self._rules[key] = rule

    @classmethod
    def from_spec(cls, spec: str) -> RoutingPolicy:
        return cls(parse_routes(spec))

    @classmethod
    def default(cls) -> RoutingPolicy:
        return cls.from_spec(DEFAULT_ROUTES_SPEC)

    @property
    def rules(self) -> list[RoutingRule]:
        return list(self._rules.values())

    def resolve(self, *, source: str, event_type: str) -> RoutingRule | None:
        """Return the matching rule, or ``None`` when the event kind is unroutable."""

        return self._rules.get((_normalize(source), _normalize(event_type)))


def parse_routes(spec: str) -> list[RoutingRule]:
    """Parse ``source:type=task_type[@priority][+repo]`` entries separated by commas."""

    rules: list[RoutingRule] = []
    for raw_entry in spec.split(","):
        entry = raw_entry.strip()
        if not entry:
            continue
        rules.append(_parse_route(entry))
    return rules


def _parse_route(entry: str) -> RoutingRule:
    kind, sep, target = entry.partition("=")
    if not sep:
        raise ValueError(f"Route entry must contain '=': {entry!r}")
    source, sep, event_type = kind.partition(":")
    if not sep or not source.strip() or not event_type.strip():
        raise ValueError(f"Route entry must start with 'source:event_type': {entry!r}")

    target = target.strip()
    requires_repository = False
    if target.endswith("+repo"):
        requires_repository = True
        target = target[: -len("+repo")]

    priority = DEFAULT_ROUTE_PRIORITY
    task_type, sep, raw_priority = target.partition("@")
    if sep:
        try:
            priority = int(raw_priority)
        except ValueError as error:
            raise ValueError(f"Route priority must be an integer: {entry!r}") from error
        if priority < 0:
            raise ValueError(f"Route priority must be >= 0: {entry!r}")
    task_type = task_type.strip()
    if not task_type:
        raise ValueError(f"Route entry has empty task type: {entry!r}")

    return RoutingRule(
        source=source.strip(),
        event_type=event_type.strip(),
        task_type=task_type,
        priority=priority,
        requires_repository=requires_repository,
    )


def _normalize(value: str) -> str:
    return value.strip().lower()
