"""Prompt templates rendered into each attempt workspace."""

from __future__ import annotations

_RESULT_CONTRACT = """
IMPORTANT: execution rules
- Context files are JSON documents in the directory named by AGENT_DISPATCH_CONTEXT_DIR
  (context/ inside your working directory). Read them before acting.
- When you are done, write exactly one JSON file to output/result.json
  (the directory is named by AGENT_DISPATCH_OUTPUT_DIR) with this shape:
  {{
    "success": true,
    "actions": [
      {{
        "type": "<operation, e.g. comment or label>",
        "platform": "<issue_tracker | chat | code_host>",
        "target_resource_id": "<id of the resource you acted on>",
        "timestamp": "<ISO-8601 time of the action>",
        "success": true,
        "detail": {{}}
      }}
    ],
    "analysis_summary": "<short plain-text summary>"
  }}
- Record every external side effect you performed as one entry in "actions".
  An empty "actions" list is fine when nothing needed to be done.
- Set "success" to false if you could not complete the task.
- Do not write anything else to output/.
"""

TRIAGE_PROMPT = """\
You are triaging a newly reported issue from {source}.

The issue is resource {resource_id}. Its full payload is in the context directory.
Decide severity, the most likely owning area, and whether the report is a duplicate
or needs more information. Apply labels or post a short comment when useful.
""" + _RESULT_CONTRACT

REVIEW_PROMPT = """\
You are reviewing a change on {source}.

The change is resource {resource_id}. The event payload is in the context directory.
{repository_line}
Read the diff, look for correctness problems, risky patterns and missing tests,
and post a concise review.
""" + _RESULT_CONTRACT

ANALYSIS_PROMPT = """\
You are analysing an event from {source} concerning resource {resource_id}.

The event payload is in the context directory. Work out what is being asked,
gather what you need, and respond on the originating platform if a response is
expected.
""" + _RESULT_CONTRACT

GENERIC_PROMPT = """\
You are handling a "{task_type}" task from {source} concerning resource {resource_id}.

The event payload is in the context directory.
""" + _RESULT_CONTRACT

PROMPTS_BY_TASK_TYPE: dict[str, str] = {
    "triage": TRIAGE_PROMPT,
    "review": REVIEW_PROMPT,
    "analysis": ANALYSIS_PROMPT,
}


def render_prompt(
    *,
    task_type: str,
    source: str,
    resource_id: str,
    repository_ref: str | None,
) -> str:
    """Render the task-type specific prompt; unknown types get the generic one."""

    template = PROMPTS_BY_TASK_TYPE.get(task_type.strip().lower(), GENERIC_PROMPT)
    repository_line = (
        f"The repository checkout reference is {repository_ref}."
        if repository_ref
        else "No repository reference was provided."
    )
    return template.format(
        task_type=task_type,
        source=source,
        resource_id=resource_id,
        repository_line=repository_line,
    )
