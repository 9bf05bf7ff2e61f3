"""Tests for the workflow parser, validator and dependency resolver."""

from __future__ import annotations

import pytest

from gantry.engine.dag import (
    DependencyError,
    WorkflowValidationError,
    ancestors,
    build_plan,
    ensure_valid,
    parse,
    parse_yaml_string,
    validate,
)

# --- Fixtures ---


PIPELINE_YAML = """
name: ci
on:
  push:
    branches: [main]
env:
  GLOBAL: "1"
jobs:
  build:
    runs-on: ubuntu-latest
    outputs:
      version: ${{ steps.v.outputs.version }}
    steps:
      - uses: actions/checkout@v4
      - id: v
        run: echo "version=1.0" >> "$GITHUB_OUTPUT"
  lint:
    runs-on: ubuntu-latest
    steps:
      - run: echo lint
  test:
    needs: build
    runs-on: [self-hosted, linux]
    strategy:
      fail-fast: false
      max-parallel: 2
      matrix:
        py: ["3.11", "3.12"]
    steps:
      - run: echo test
  deploy:
    needs: [test, lint]
    if: github.ref == 'refs/heads/main'
    runs-on: ubuntu-latest
    permissions: read-all
    timeout-minutes: 10
    steps:
      - name: Ship
        run: echo ship
        continue-on-error: true
"""

CYCLE_YAML = """
name: cycle
on: push
jobs:
  a:
    needs: c
    runs-on: x
    steps: [{run: echo a}]
  b:
    needs: a
    runs-on: x
    steps: [{run: echo b}]
  c:
    needs: b
    runs-on: x
    steps: [{run: echo c}]
"""


class TestParse:
    def test_parse_pipeline(self):
        wf = parse_yaml_string(PIPELINE_YAML)
        assert wf.name == "ci"
        assert list(wf.jobs) == ["build", "lint", "test", "deploy"]
        assert wf.triggers[0].event == "push"
        assert wf.triggers[0].branches == ["main"]
        assert wf.env == {"GLOBAL": "1"}

    def test_job_fields(self):
        wf = parse_yaml_string(PIPELINE_YAML)
        test = wf.get_job("test")
        assert test.needs == ["build"]
        assert test.runs_on == ["self-hosted", "linux"]
        assert test.strategy.fail_fast is False
        assert test.strategy.max_parallel == 2
        assert test.strategy.matrix == {"py": ["3.11", "3.12"]}

        deploy = wf.get_job("deploy")
        assert deploy.permissions == {"*": "read"}
        assert deploy.timeout_minutes == 10
        assert deploy.steps[0].continue_on_error is True
        assert deploy.steps[0].display_name == "Ship"

    def test_step_fields(self):
        wf = parse_yaml_string(PIPELINE_YAML)
        checkout, version = wf.get_job("build").steps
        assert checkout.uses == "actions/checkout@v4"
        assert checkout.key == "__step_0"
        assert version.key == "v"
        assert wf.get_job("build").outputs == {"version": "${{ steps.v.outputs.version }}"}

    def test_get_job_unknown(self):
        wf = parse_yaml_string(PIPELINE_YAML)
        with pytest.raises(ValueError):
            wf.get_job("nope")

    def test_parse_file(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text(PIPELINE_YAML)
        wf = parse(path)
        assert wf.source == path.resolve()
        assert validate(wf) == []

    def test_name_defaults_to_file_name(self, tmp_path):
        path = tmp_path / "nightly.yml"
        path.write_text("on: push\njobs:\n  a:\n    runs-on: x\n    steps: [{run: echo}]\n")
        assert parse(path).name == "nightly.yml"

    def test_invalid_trigger_is_validation_error(self):
        with pytest.raises(WorkflowValidationError):
            parse_yaml_string("on: teleport\njobs: {}\n")

    def test_not_a_mapping(self):
        with pytest.raises(WorkflowValidationError):
            parse_yaml_string("- just\n- a list\n")


class TestValidate:
    def test_valid(self):
        assert validate(parse_yaml_string(PIPELINE_YAML)) == []

    def test_unknown_need(self):
        wf = parse_yaml_string("""
on: push
jobs:
  a:
    needs: ghost
    runs-on: x
    steps: [{run: echo}]
""")
        errors = validate(wf)
        assert any("unknown job 'ghost'" in e for e in errors)
        with pytest.raises(DependencyError):
            ensure_valid(wf)

    def test_cycle(self):
        wf = parse_yaml_string(CYCLE_YAML)
        errors = validate(wf)
        assert any("Cycle detected" in e for e in errors)
        with pytest.raises(DependencyError):
            ensure_valid(wf)

    def test_step_needs_exactly_one_of_run_uses(self):
        wf = parse_yaml_string("""
on: push
jobs:
  a:
    runs-on: x
    steps:
      - run: echo
        uses: actions/checkout@v4
      - name: nothing
""")
        errors = validate(wf)
        assert sum("exactly one of 'run' or 'uses'" in e for e in errors) == 2
        with pytest.raises(WorkflowValidationError) as exc_info:
            ensure_valid(wf)
        assert not isinstance(exc_info.value, DependencyError)

    def test_action_needs_version(self):
        wf = parse_yaml_string("""
on: push
jobs:
  a:
    runs-on: x
    steps: [{uses: actions/checkout}]
""")
        assert any("@version" in e for e in validate(wf))

    def test_duplicate_step_id(self):
        wf = parse_yaml_string("""
on: push
jobs:
  a:
    runs-on: x
    steps:
      - {id: s, run: echo 1}
      - {id: s, run: echo 2}
""")
        assert any("duplicate step id 's'" in e for e in validate(wf))

    def test_missing_trigger_runs_on_and_steps(self):
        wf = parse_yaml_string("jobs:\n  a: {}\n")
        errors = validate(wf)
        assert any("trigger" in e for e in errors)
        assert any("runs-on" in e for e in errors)
        assert any("at least one step" in e for e in errors)

    def test_bad_permission_level(self):
        wf = parse_yaml_string("""
on: push
permissions:
  contents: admin
jobs:
  a:
    runs-on: x
    steps: [{run: echo}]
""")
        assert any("invalid permission level 'admin'" in e for e in validate(wf))

    def test_reusable_job_with_steps(self):
        wf = parse_yaml_string("""
on: push
jobs:
  call:
    uses: ./.github/workflows/lib.yml
    steps: [{run: echo}]
""")
        assert any("both 'uses' and 'steps'" in e for e in validate(wf))


class TestPlan:
    def test_stages(self):
        plan = build_plan(parse_yaml_string(PIPELINE_YAML))
        assert plan.stages == [["build", "lint"], ["test"], ["deploy"]]

    def test_cycle_cannot_be_planned(self):
        with pytest.raises(DependencyError):
            build_plan(parse_yaml_string(CYCLE_YAML))

    def test_ancestors(self):
        wf = parse_yaml_string(PIPELINE_YAML)
        assert ancestors(wf, "deploy") == {"test", "lint", "build"}
        assert ancestors(wf, "build") == set()
