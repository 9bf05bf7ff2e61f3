"""Workflow trigger parsing and event matching."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from apscheduler.triggers.cron import CronTrigger

EVENTS = frozenset({
    "push",
    "pull_request",
    "schedule",
    "workflow_dispatch",
    "workflow_call",
})

DEFAULT_PR_TYPES = ("opened", "synchronize", "reopened")

INPUT_TYPES = frozenset({"string", "boolean", "number", "choice", "environment"})


class TriggerError(ValueError):
    """Invalid trigger definition, or an event whose inputs do not fit it."""


@dataclass
class InputSpec:
    """A typed ``workflow_dispatch`` / ``workflow_call`` input."""

    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""
    options: list[str] = field(default_factory=list)


@dataclass
class Trigger:
    """One entry of the ``on:`` block."""

    event: str
    branches: list[str] | None = None
    branches_ignore: list[str] | None = None
    tags: list[str] | None = None
    tags_ignore: list[str] | None = None
    paths: list[str] | None = None
    paths_ignore: list[str] | None = None
    types: list[str] | None = None
    crons: list[str] = field(default_factory=list)
    inputs: dict[str, InputSpec] = field(default_factory=dict)
    # workflow_call only
    outputs: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, Any] = field(default_factory=dict)


@dataclass
class Event:
    """An activation event presented to a workflow."""

    name: str
    ref: str = "refs/heads/main"
    sha: str = "0" * 40
    actor: str = "gantry"
    repository: str = "local/repository"
    changed_paths: list[str] | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    base_ref: str | None = None
    head_ref: str | None = None
    action: str | None = None
    schedule: str | None = None

    @property
    def ref_type(self) -> str:
        return "tag" if self.ref.startswith("refs/tags/") else "branch"

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


def _as_list(value: Any, where: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise TriggerError(f"{where} must be a string or list")


def _parse_inputs(data: dict | None, event: str) -> dict[str, InputSpec]:
    inputs: dict[str, InputSpec] = {}
    for name, spec in (data or {}).items():
        spec = spec or {}
        input_type = spec.get("type", "string")
        if input_type not in INPUT_TYPES:
            raise TriggerError(f"{event} input '{name}' has unknown type '{input_type}'")
        options = [str(o) for o in spec.get("options", [])]
        if input_type == "choice" and not options:
            raise TriggerError(f"{event} choice input '{name}' needs options")
        inputs[name] = InputSpec(
            name=name,
            type=input_type,
            required=bool(spec.get("required", False)),
            default=spec.get("default"),
            description=spec.get("description", ""),
            options=options,
        )
    return inputs


def _parse_trigger(event: str, data: dict | None) -> Trigger:
    if event not in EVENTS:
        raise TriggerError(f"Unsupported trigger event '{event}'")
    data = data or {}
    if event == "schedule":
        if not isinstance(data, list):
            raise TriggerError("schedule must be a list of {cron: ...} entries")
        crons = []
        for entry in data:
            if not isinstance(entry, dict) or "cron" not in entry:
                raise TriggerError("schedule entries need a 'cron' key")
            crons.append(validate_cron(str(entry["cron"])))
        return Trigger(event=event, crons=crons)

    if not isinstance(data, dict):
        raise TriggerError(f"'{event}' trigger must be a mapping")
    for include, exclude in (("branches", "branches-ignore"),
                             ("tags", "tags-ignore"),
                             ("paths", "paths-ignore")):
        if include in data and exclude in data:
            raise TriggerError(f"'{event}' cannot use both {include} and {exclude}")

    return Trigger(
        event=event,
        branches=_as_list(data.get("branches"), f"{event}.branches"),
        branches_ignore=_as_list(data.get("branches-ignore"), f"{event}.branches-ignore"),
        tags=_as_list(data.get("tags"), f"{event}.tags"),
        tags_ignore=_as_list(data.get("tags-ignore"), f"{event}.tags-ignore"),
        paths=_as_list(data.get("paths"), f"{event}.paths"),
        paths_ignore=_as_list(data.get("paths-ignore"), f"{event}.paths-ignore"),
        types=_as_list(data.get("types"), f"{event}.types"),
        inputs=_parse_inputs(data.get("inputs"), event),
        outputs=dict(data.get("outputs") or {}),
        secrets=dict(data.get("secrets") or {}),
    )


def parse_triggers(on: Any) -> list[Trigger]:
    """Parse the ``on:`` value (string, list or mapping)."""
    if on is None:
        return []
    if isinstance(on, str):
        return [_parse_trigger(on, None)]
    if isinstance(on, list):
        return [_parse_trigger(str(e), None) for e in on]
    if isinstance(on, dict):
        return [_parse_trigger(str(e), data) for e, data in on.items()]
    raise TriggerError(f"Invalid 'on' value: {on!r}")


# ---------------------------------------------------------------------------
# Glob filters
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> re.Pattern:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                if pattern.startswith("**/", i):
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "+":
            out.append("+")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                out.append(pattern[i:end + 1])
                i = end + 1
                continue
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(pattern: str, value: str) -> bool:
    """Match a single GitHub-style filter glob."""
    return _glob_regex(pattern).match(value) is not None


def filter_match(patterns: list[str], value: str) -> bool:
    """Apply an ordered pattern list; ``!pattern`` un-matches a prior match."""
    matched = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if matched and glob_match(pattern[1:], value):
                matched = False
        elif not matched and glob_match(pattern, value):
            matched = True
    return matched


def _ref_allowed(trigger: Trigger, event: Event, name: str) -> bool:
    if event.name == "pull_request":
        include, exclude = trigger.branches, trigger.branches_ignore
        name = event.base_ref or name
    elif event.ref_type == "tag":
        include, exclude = trigger.tags, trigger.tags_ignore
        # A push trigger with only branch filters does not run for tags
        if include is None and exclude is None and (
            trigger.branches is not None or trigger.branches_ignore is not None
        ):
            return False
    else:
        include, exclude = trigger.branches, trigger.branches_ignore
        if include is None and exclude is None and (
            trigger.tags is not None or trigger.tags_ignore is not None
        ):
            return False
    if include is not None and not filter_match(include, name):
        return False
    if exclude is not None and filter_match(exclude, name):
        return False
    return True


def _paths_allowed(trigger: Trigger, event: Event) -> bool:
    if event.changed_paths is None:
        return True
    if trigger.paths is not None:
        return any(filter_match(trigger.paths, p) for p in event.changed_paths)
    if trigger.paths_ignore is not None:
        return not all(filter_match(trigger.paths_ignore, p) for p in event.changed_paths)
    return True


def matches(trigger: Trigger, event: Event) -> bool:
    """True if *event* activates *trigger*."""
    if trigger.event != event.name:
        return False

    if event.name == "schedule":
        return event.schedule is None or event.schedule in trigger.crons

    if event.name in ("workflow_dispatch", "workflow_call"):
        return True

    if event.name == "pull_request":
        types = trigger.types or list(DEFAULT_PR_TYPES)
        if (event.action or "opened") not in types:
            return False

    if not _ref_allowed(trigger, event, event.ref_name):
        return False
    if event.ref_type == "tag" and event.name == "push":
        # Path filters are not evaluated for tag pushes
        return True
    return _paths_allowed(trigger, event)


def select_trigger(triggers: list[Trigger], event: Event) -> Trigger | None:
    for trigger in triggers:
        if matches(trigger, event):
            return trigger
    return None


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


def _coerce(spec: InputSpec, value: Any) -> Any:
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no", ""):
            return False
        raise TriggerError(f"Input '{spec.name}' expects a boolean, got {value!r}")
    if spec.type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            number = float(str(value))
        except ValueError as e:
            raise TriggerError(f"Input '{spec.name}' expects a number, got {value!r}") from e
        return int(number) if number.is_integer() else number
    if spec.type == "choice":
        text = str(value)
        if text not in spec.options:
            raise TriggerError(
                f"Input '{spec.name}' must be one of {spec.options}, got {text!r}"
            )
        return text
    return str(value) if value is not None else ""


def resolve_inputs(trigger: Trigger, provided: dict[str, Any]) -> dict[str, Any]:
    """Validate and type the inputs for a dispatch/call trigger."""
    unknown = set(provided) - set(trigger.inputs)
    if unknown:
        raise TriggerError(f"Unknown input(s): {', '.join(sorted(unknown))}")

    resolved: dict[str, Any] = {}
    for name, spec in trigger.inputs.items():
        if name in provided:
            resolved[name] = _coerce(spec, provided[name])
        elif spec.default is not None:
            resolved[name] = _coerce(spec, spec.default)
        elif spec.required:
            raise TriggerError(f"Required input '{name}' not provided")
        elif spec.type == "boolean":
            resolved[name] = False
        elif spec.type == "number":
            resolved[name] = 0
        else:
            resolved[name] = ""
    return resolved


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------


def validate_cron(expression: str) -> str:
    """Return the expression if APScheduler accepts it, else raise TriggerError."""
    try:
        CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError as e:
        raise TriggerError(f"Invalid cron expression '{expression}': {e}") from e
    return expression


def next_fire_time(expression: str, now: datetime | None = None) -> datetime | None:
    trigger = CronTrigger.from_crontab(expression, timezone="UTC")
    now = now or datetime.now(timezone.utc)
    return trigger.get_next_fire_time(None, now)
