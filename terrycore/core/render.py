"""
Human-readable plan and apply summaries.

Used for log lines and the state viewer. Values of sensitive fields never
appear in the output.
"""

import json
from typing import Any, List, Optional

from .differ import Action, Change, Plan
from .providers import ProviderRegistry, ResourceTypePolicy
from .values import ValueKind, Value
from ..security.redactor import OutputRedactor

SENSITIVE = "(sensitive value)"
KNOWN_AFTER_APPLY = "(known after apply)"

_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DESTROY: "-",
    Action.READ: "<=",
}

_VERBS = {
    Action.CREATE: "will be created",
    Action.UPDATE: "will be updated in-place",
    Action.REPLACE: "must be replaced",
    Action.DESTROY: "will be destroyed",
    Action.READ: "will be read during apply",
}


def describe_value(value: Value) -> str:
    if not value.is_known():
        if value.kind == ValueKind.REFERENCE:
            return f"${{{value.payload}}}"
        return KNOWN_AFTER_APPLY
    return json.dumps(value.to_python(), sort_keys=True)


def describe_plain(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def _policy(registry: Optional[ProviderRegistry], resource_type: str) -> ResourceTypePolicy:
    if registry is not None and resource_type in registry:
        return registry.policy(resource_type)
    return ResourceTypePolicy()


def _change_lines(change: Change, policy: ResourceTypePolicy) -> List[str]:
    lines = [f"  # {change.address} {_VERBS[change.action]}"]
    symbol = _SYMBOLS[change.action]
    lines.append(f"  {symbol} {change.address}")

    for diff in change.diffs:
        if diff.name in policy.sensitive_fields:
            before = after = SENSITIVE
        else:
            before = describe_plain(diff.before)
            after = describe_value(diff.after)
        marker = "  # forces replacement" if diff.forces_replacement else ""
        if change.action == Action.CREATE:
            lines.append(f"      {diff.name} = {after}")
        else:
            lines.append(f"      {diff.name}: {before} -> {after}{marker}")
    return lines


def render_plan(plan: Plan, registry: Optional[ProviderRegistry] = None) -> str:
    """
    Render a plan the way an operator reviews it.

    The final line is always the one-line summary.
    """
    redactor = OutputRedactor()
    lines: List[str] = []

    for drift in plan.drift:
        detail = f" ({', '.join(drift.fields)})" if drift.fields else ""
        lines.append(f"  ! {drift.address} {drift.kind} outside of management{detail}")

    for change in plan.changes:
        policy = _policy(registry, change.type)
        if change.prior is not None:
            redactor.add_attributes(change.prior.attributes, policy.sensitive_fields)
        for field_name in policy.sensitive_fields:
            value = change.after.get(field_name)
            if value is not None and value.is_known():
                redactor.add(value.to_python())
        if change.action == Action.NOOP:
            continue
        lines.extend(_change_lines(change, policy))

    counts = plan.summary()
    to_add = counts["create"] + counts["replace"]
    to_change = counts["update"]
    to_destroy = counts["destroy"] + counts["replace"]
    if plan.has_changes:
        summary = f"Plan: {to_add} to add, {to_change} to change, {to_destroy} to destroy."
    else:
        summary = "No changes. Infrastructure matches the configuration."

    body = [redactor.redact(line) for line in lines]
    return "\n".join(body + [summary])


def render_apply_result(result) -> str:
    """Render an ApplyResult: one line per problem, then the summary."""
    lines: List[str] = []
    for outcome in result.outcomes:
        if outcome.error:
            lines.append(f"  {outcome.status.value}: {outcome.address}: {outcome.error}")

    counts = result.summary()
    added = counts["created"] + counts["replaced"]
    changed = counts["updated"]
    destroyed = counts["destroyed"] + counts["replaced"]
    headline = "Apply complete!" if result.success else "Apply incomplete."
    lines.append(
        f"{headline} Resources: {added} added, {changed} changed, {destroyed} destroyed, "
        f"{counts['failed']} failed, {counts['skipped']} skipped."
    )
    return "\n".join(lines)
