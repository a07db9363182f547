"""Runtime configuration for the dispatcher, coordinator and worker supervision."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from agent_dispatch.orchestrator.routing import DEFAULT_ROUTES_SPEC, RoutingPolicy

DEFAULT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_dispatch.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --output-dir {output_dir}"
)


@dataclass(slots=True)
class WorkspaceSettings:
    """Per-attempt sandbox settings."""

    root_dir: Path = Path(".agent_dispatch/workspaces")
    archive_dir: Path = Path(".agent_dispatch/archive")
    archive_on_success: bool = False
    infra_retry_limit: int = 3
    infra_retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class SupervisorSettings:
    """Worker process supervision settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    idle_timeout_seconds: float = 300.0
    hard_timeout_seconds: float = 1_800.0
    graceful_shutdown_seconds: float = 10.0
    poll_interval_seconds: float = 0.1
    preview_chars: int = 2_000


@dataclass(slots=True)
class AdmissionSettings:
    """Concurrency admission settings."""

    capacity: int = 2
    starvation_age_seconds: float | None = None
    starvation_age_floor_seconds: float = 60.0
    starvation_sample_size: int = 50


@dataclass(slots=True)
class RetrySettings:
    """Retry budget and backoff settings."""

    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    seed: int | None = None


@dataclass(slots=True)
class DispatchSettings:
    """Inbound event routing and deduplication settings."""

    dedup_window_seconds: int = 300
    routes: str = DEFAULT_ROUTES_SPEC

    def routing_policy(self) -> RoutingPolicy:
        return RoutingPolicy.from_spec(self.routes)


@dataclass(slots=True)
class CoordinatorSettings:
    """Control loop settings."""

    poll_interval_seconds: float = 1.0
    drain_timeout_seconds: float = 30.0
    recent_outcomes_limit: int = 10


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_dispatch.db")
    sqlite_busy_timeout_ms: int = 5_000
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_DISPATCH_DB_PATH", ".agent_dispatch.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            workspace=WorkspaceSettings(
                root_dir=Path(
                    os.getenv("AGENT_DISPATCH_WORKSPACE_ROOT", ".agent_dispatch/workspaces"),
                ),
                archive_dir=Path(
                    os.getenv("AGENT_DISPATCH_ARCHIVE_ROOT", ".agent_dispatch/archive"),
                ),
                archive_on_success=_env_bool("AGENT_DISPATCH_ARCHIVE_ON_SUCCESS", default=False),
                infra_retry_limit=int(os.getenv("AGENT_DISPATCH_INFRA_RETRY_LIMIT", "3")),
                infra_retry_backoff_seconds=float(
                    os.getenv("AGENT_DISPATCH_INFRA_RETRY_BACKOFF_SECONDS", "0.5"),
                ),
            ),
            supervisor=SupervisorSettings(
                command_template=os.getenv(
                    "AGENT_DISPATCH_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                idle_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_IDLE_TIMEOUT_SECONDS", "300"),
                ),
                hard_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_HARD_TIMEOUT_SECONDS", "1800"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                poll_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_SUPERVISOR_POLL_SECONDS", "0.1"),
                ),
                preview_chars=int(os.getenv("AGENT_DISPATCH_PREVIEW_CHARS", "2000")),
            ),
            admission=AdmissionSettings(
                capacity=int(os.getenv("AGENT_DISPATCH_CAPACITY", "2")),
                starvation_age_seconds=_env_optional_float("AGENT_DISPATCH_STARVATION_AGE_SECONDS"),
                starvation_age_floor_seconds=float(
                    os.getenv("AGENT_DISPATCH_STARVATION_AGE_FLOOR_SECONDS", "60"),
                ),
                starvation_sample_size=int(
                    os.getenv("AGENT_DISPATCH_STARVATION_SAMPLE_SIZE", "50"),
                ),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("AGENT_DISPATCH_MAX_RETRIES", "3")),
                backoff_base_seconds=float(
                    os.getenv("AGENT_DISPATCH_BACKOFF_BASE_SECONDS", "1.0"),
                ),
                backoff_max_seconds=float(
                    os.getenv("AGENT_DISPATCH_BACKOFF_MAX_SECONDS", "30.0"),
                ),
                backoff_multiplier=float(
                    os.getenv("AGENT_DISPATCH_BACKOFF_MULTIPLIER", "2.0"),
                ),
                seed=_env_optional_int("AGENT_DISPATCH_RETRY_SEED"),
            ),
            dispatch=DispatchSettings(
                dedup_window_seconds=int(os.getenv("AGENT_DISPATCH_DEDUP_WINDOW_SECONDS", "300")),
                routes=os.getenv("AGENT_DISPATCH_ROUTES", DEFAULT_ROUTES_SPEC),
            ),
            coordinator=CoordinatorSettings(
                poll_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                drain_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_DRAIN_TIMEOUT_SECONDS", "30"),
                ),
                recent_outcomes_limit=int(
                    os.getenv("AGENT_DISPATCH_RECENT_OUTCOMES_LIMIT", "10"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.admission.capacity < 1:
            raise ValueError("AGENT_DISPATCH_CAPACITY must be >= 1.")
        if (
            self.admission.starvation_age_seconds is not None
            and self.admission.starvation_age_seconds <= 0
        ):
            raise ValueError("AGENT_DISPATCH_STARVATION_AGE_SECONDS must be > 0.")
        if self.admission.starvation_age_floor_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_STARVATION_AGE_FLOOR_SECONDS must be > 0.")
        if self.retry.max_retries < 0:
            raise ValueError("AGENT_DISPATCH_MAX_RETRIES must be >= 0.")
        if self.retry.backoff_base_seconds < 0 or self.retry.backoff_max_seconds < 0:
            raise ValueError("Backoff delays must be >= 0.")
        if self.retry.backoff_multiplier < 1:
            raise ValueError("AGENT_DISPATCH_BACKOFF_MULTIPLIER must be >= 1.")
        if self.supervisor.idle_timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.supervisor.hard_timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_HARD_TIMEOUT_SECONDS must be > 0.")
        if self.supervisor.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.supervisor.command_template.strip():
            raise ValueError("AGENT_DISPATCH_COMMAND_TEMPLATE must not be empty.")
        if self.workspace.infra_retry_limit < 1:
            raise ValueError("AGENT_DISPATCH_INFRA_RETRY_LIMIT must be >= 1.")
        if self.dispatch.dedup_window_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_DEDUP_WINDOW_SECONDS must be > 0.")
        self.dispatch.routing_policy()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return float(value)


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return int(value)
