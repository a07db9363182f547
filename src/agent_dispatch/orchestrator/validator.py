"""Validation of the structured result artifact written by a worker."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_dispatch.orchestrator.models import ActionRecord, FailureClass
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_REQUIRED_ACTION_FIELDS = ("type", "platform", "target_resource_id")


@dataclass(slots=True)
class DroppedAction:
    """An action entry rejected from an otherwise valid result."""

    index: int
    reason: str


@dataclass(slots=True)
class ParsedResult:
    """Schema-valid worker result."""

    success: bool
    actions: list[ActionRecord]
    analysis_summary: str
    dropped: list[DroppedAction] = field(default_factory=list)


@dataclass(slots=True)
class ValidationError:
    """Result artifact missing or not matching the contract."""

    failure_class: FailureClass
    message: str


def parse_result(result_path: Path) -> ParsedResult | ValidationError:
    """Parse ``result_path``. Never performs the actions it describes."""

    if not result_path.exists():
        return ValidationError(
            failure_class=FailureClass.OUTPUT_MISSING,
            message=f"Result file not found: {result_path.name}",
        )
    try:
        raw = json.loads(result_path.read_text("utf-8"))
    except (OSError, UnicodeDecodeError) as error:
        return ValidationError(
            failure_class=FailureClass.OUTPUT_INVALID,
            message=f"Result file is unreadable: {error}",
        )
    except json.JSONDecodeError as error:
        return ValidationError(
            failure_class=FailureClass.OUTPUT_INVALID,
            message=f"Result is not valid JSON: {error.msg}",
        )
    if not isinstance(raw, dict):
        return ValidationError(
            failure_class=FailureClass.OUTPUT_INVALID,
            message="Result must be a JSON object.",
        )

    success = raw.get("success")
    if not isinstance(success, bool):
        return ValidationError(
            failure_class=FailureClass.OUTPUT_INVALID,
            message="Result field 'success' must be a boolean.",
        )
    raw_actions = raw.get("actions")
    if not isinstance(raw_actions, list):
        return ValidationError(
            failure_class=FailureClass.OUTPUT_INVALID,
            message="Result field 'actions' must be an array.",
        )
    summary = raw.get("analysis_summary")
    if not isinstance(summary, str):
        return ValidationError(
            failure_class=FailureClass.OUTPUT_INVALID,
            message="Result field 'analysis_summary' must be a string.",
        )

    actions: list[ActionRecord] = []
    dropped: list[DroppedAction] = []
    for index, item in enumerate(raw_actions):
        action, reason = _parse_action(item)
        if action is None:
            logger.warning("Dropping action #%d from %s: %s", index, result_path, reason)
            dropped.append(DroppedAction(index=index, reason=reason))
            continue
        actions.append(action)

    return ParsedResult(
        success=success,
        actions=actions,
        analysis_summary=summary,
        dropped=dropped,
    )


def _parse_action(item: Any) -> tuple[ActionRecord | None, str]:
    if not isinstance(item, dict):
        return None, "action must be an object"
    for key in _REQUIRED_ACTION_FIELDS:
        value = item.get(key)
        if not isinstance(value, str) or not value.strip():
            return None, f"action field '{key}' must be a non-empty string"

    detail = item.get("detail")
    if detail is not None and not isinstance(detail, dict):
        detail = {"value": detail}
    success = item.get("success", True)
    if not isinstance(success, bool):
        return None, "action field 'success' must be a boolean"

    return (
        ActionRecord(
            action_type=item["type"].strip(),
            platform=item["platform"].strip(),
            target_resource_id=item["target_resource_id"].strip(),
            performed_at=_parse_timestamp(item.get("timestamp")),
            success=success,
            detail=detail,
        ),
        "",
    )


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return utc_now()
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return utc_now()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
