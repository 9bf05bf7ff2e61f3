"""Tests for trigger parsing, event matching and dispatch inputs."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from gantry.engine.triggers import (
    Event,
    TriggerError,
    filter_match,
    glob_match,
    matches,
    next_fire_time,
    parse_triggers,
    resolve_inputs,
    select_trigger,
    validate_cron,
)


class TestParseTriggers:
    def test_string_list_and_mapping_forms(self):
        assert [t.event for t in parse_triggers("push")] == ["push"]
        assert [t.event for t in parse_triggers(["push", "pull_request"])] == [
            "push", "pull_request",
        ]
        triggers = parse_triggers({"push": {"branches": "main"}, "workflow_dispatch": None})
        assert triggers[0].branches == ["main"]
        assert triggers[1].event == "workflow_dispatch"

    def test_unknown_event(self):
        with pytest.raises(TriggerError):
            parse_triggers("deployment_status")

    def test_branches_and_ignore_are_exclusive(self):
        with pytest.raises(TriggerError):
            parse_triggers({"push": {"branches": ["main"], "branches-ignore": ["dev"]}})

    def test_schedule(self):
        (trigger,) = parse_triggers({"schedule": [{"cron": "0 3 * * 1"}]})
        assert trigger.crons == ["0 3 * * 1"]

    def test_invalid_cron(self):
        with pytest.raises(TriggerError):
            parse_triggers({"schedule": [{"cron": "every day"}]})

    def test_choice_input_needs_options(self):
        with pytest.raises(TriggerError):
            parse_triggers({"workflow_dispatch": {"inputs": {"env": {"type": "choice"}}}})


class TestGlobs:
    def test_single_star_stops_at_slash(self):
        assert glob_match("release/*", "release/1.0")
        assert not glob_match("release/*", "release/1.0/hotfix")

    def test_double_star(self):
        assert glob_match("docs/**", "docs/a/b.md")
        assert glob_match("**/*.py", "setup.py")
        assert glob_match("**/*.py", "src/pkg/mod.py")

    def test_negation_order(self):
        patterns = ["releases/**", "!releases/**-alpha", "releases/beta-alpha"]
        assert filter_match(patterns, "releases/1.0")
        assert not filter_match(patterns, "releases/2.0-alpha")
        assert filter_match(patterns, "releases/beta-alpha")


class TestMatching:
    def test_push_branch_filter(self):
        (trigger,) = parse_triggers({"push": {"branches": ["main", "release/**"]}})
        assert matches(trigger, Event("push", ref="refs/heads/main"))
        assert matches(trigger, Event("push", ref="refs/heads/release/1.x"))
        assert not matches(trigger, Event("push", ref="refs/heads/feature"))

    def test_branch_only_filter_ignores_tags(self):
        (trigger,) = parse_triggers({"push": {"branches": ["main"]}})
        assert not matches(trigger, Event("push", ref="refs/tags/v1.0"))

    def test_tag_filter(self):
        (trigger,) = parse_triggers({"push": {"tags": ["v*"]}})
        assert matches(trigger, Event("push", ref="refs/tags/v1.0"))
        assert not matches(trigger, Event("push", ref="refs/heads/main"))

    def test_branches_ignore(self):
        (trigger,) = parse_triggers({"push": {"branches-ignore": ["wip/**"]}})
        assert not matches(trigger, Event("push", ref="refs/heads/wip/x"))
        assert matches(trigger, Event("push", ref="refs/heads/main"))

    def test_paths(self):
        (trigger,) = parse_triggers({"push": {"paths": ["src/**"]}})
        assert matches(trigger, Event("push", changed_paths=["src/app.py", "README.md"]))
        assert not matches(trigger, Event("push", changed_paths=["README.md"]))
        # Unknown change set: path filters do not block
        assert matches(trigger, Event("push", changed_paths=None))

    def test_paths_ignore(self):
        (trigger,) = parse_triggers({"push": {"paths-ignore": ["docs/**"]}})
        assert not matches(trigger, Event("push", changed_paths=["docs/a.md"]))
        assert matches(trigger, Event("push", changed_paths=["docs/a.md", "src/b.py"]))

    def test_pull_request_uses_base_branch_and_types(self):
        (trigger,) = parse_triggers({"pull_request": {"branches": ["main"]}})
        event = Event("pull_request", ref="refs/pull/7/merge", base_ref="main")
        assert matches(trigger, event)
        event.action = "closed"
        assert not matches(trigger, event)

    def test_other_event_does_not_match(self):
        (trigger,) = parse_triggers("push")
        assert not matches(trigger, Event("pull_request"))

    def test_schedule_matches_own_cron(self):
        (trigger,) = parse_triggers({"schedule": [{"cron": "0 3 * * *"}]})
        assert matches(trigger, Event("schedule", schedule="0 3 * * *"))
        assert not matches(trigger, Event("schedule", schedule="0 4 * * *"))

    def test_select_first_matching(self):
        triggers = parse_triggers({"push": {"branches": ["main"]}, "workflow_dispatch": None})
        assert select_trigger(triggers, Event("workflow_dispatch")).event == "workflow_dispatch"
        assert select_trigger(triggers, Event("push", ref="refs/heads/dev")) is None

    def test_ref_helpers(self):
        event = Event("push", ref="refs/tags/v2")
        assert event.ref_type == "tag"
        assert event.ref_name == "v2"


class TestInputs:
    def _trigger(self):
        (trigger,) = parse_triggers({"workflow_dispatch": {"inputs": {
            "target": {"type": "choice", "options": ["staging", "prod"], "required": True},
            "dry-run": {"type": "boolean", "default": True},
            "count": {"type": "number"},
            "note": {"description": "free text"},
        }}})
        return trigger

    def test_defaults_and_coercion(self):
        resolved = resolve_inputs(self._trigger(), {"target": "prod", "count": "3"})
        assert resolved == {"target": "prod", "dry-run": True, "count": 3, "note": ""}

    def test_boolean_from_string(self):
        resolved = resolve_inputs(self._trigger(), {"target": "prod", "dry-run": "false"})
        assert resolved["dry-run"] is False

    def test_required_missing(self):
        with pytest.raises(TriggerError, match="target"):
            resolve_inputs(self._trigger(), {})

    def test_unknown_input(self):
        with pytest.raises(TriggerError, match="Unknown"):
            resolve_inputs(self._trigger(), {"target": "prod", "bogus": 1})

    def test_invalid_choice(self):
        with pytest.raises(TriggerError):
            resolve_inputs(self._trigger(), {"target": "qa"})

    def test_invalid_number(self):
        with pytest.raises(TriggerError):
            resolve_inputs(self._trigger(), {"target": "prod", "count": "many"})


class TestCron:
    def test_validate(self):
        assert validate_cron("*/15 * * * *") == "*/15 * * * *"
        with pytest.raises(TriggerError):
            validate_cron("61 * * * *")

    def test_next_fire_time(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        fire = next_fire_time("30 12 * * *", now)
        assert fire == datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)
