"""Action references, the built-in action registry and composite actions.

Built-in actions are plain async functions registered with
:func:`register_action` under their ``owner/repo[/path]`` name; the version
pin of a reference is accepted but not used to pick an implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import yaml

from gantry.engine import cache as cache_mod
from gantry.engine.artifacts import ArtifactNotFound, NoFilesFound
from gantry.engine.context import Context
from gantry.engine.dag import StepDefinition, _parse_step
from gantry.engine.logs import JobLog

if TYPE_CHECKING:
    from gantry.engine.executor import RunServices

logger = logging.getLogger(__name__)


class ActionError(Exception):
    """A ``uses`` step failed."""


class ActionNotFound(ActionError):
    """The action reference does not resolve to anything runnable."""


@dataclass
class ActionRef:
    kind: str  # "builtin" | "local" | "docker"
    name: str
    version: str | None = None
    path: Path | None = None


def parse_reference(uses: str, workspace: Path) -> ActionRef:
    """Resolve a ``uses:`` value.

    ``./dir`` is a local action relative to the workspace,
    ``owner/repo[/path]@ref`` a registered action.
    """
    uses = uses.strip()
    if uses.startswith("./"):
        return ActionRef(kind="local", name=uses, path=(workspace / uses).resolve())
    if uses.startswith("docker://"):
        return ActionRef(kind="docker", name=uses[len("docker://"):])
    name, sep, version = uses.partition("@")
    if not sep or not version:
        raise ActionNotFound(f"Action reference '{uses}' needs an @version")
    name = name.lower()
    if name not in _REGISTRY:
        raise ActionNotFound(f"Unable to resolve action '{uses}': not available locally")
    return ActionRef(kind="builtin", name=name, version=version)


@dataclass
class PostStep:
    name: str
    fn: Callable[[ActionRuntime], Awaitable[None]]
    runtime: ActionRuntime
    condition: str = "success()"


@dataclass
class ActionRuntime:
    """What a built-in action sees while it runs."""

    step_name: str
    inputs: dict[str, Any]
    workspace: Path
    log: JobLog
    context: Context
    services: RunServices
    env: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    post_steps: list[PostStep] = field(default_factory=list)

    def input(self, name: str, default: Any = None, required: bool = False) -> Any:
        value = self.inputs.get(name)
        if value is None or value == "":
            if required:
                raise ActionError(f"Input required and not supplied: {name}")
            return default
        return value

    def bool_input(self, name: str, default: bool = False) -> bool:
        value = self.input(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() == "true"

    def set_output(self, name: str, value: Any) -> None:
        self.outputs[name] = "" if value is None else str(value)

    def register_post(self, fn: Callable[[ActionRuntime], Awaitable[None]],
                      condition: str = "success()") -> None:
        self.post_steps.append(PostStep(f"Post {self.step_name}", fn, self, condition))


ActionFn = Callable[[ActionRuntime], Awaitable[None]]
_REGISTRY: dict[str, ActionFn] = {}


def register_action(name: str) -> Callable[[ActionFn], ActionFn]:
    def decorator(fn: ActionFn) -> ActionFn:
        _REGISTRY[name.lower()] = fn
        return fn
    return decorator


def get_action(name: str) -> ActionFn:
    try:
        return _REGISTRY[name.lower()]
    except KeyError:
        raise ActionNotFound(f"Unknown action '{name}'") from None


def registered_actions() -> list[str]:
    return sorted(_REGISTRY)


# ---------------------------------------------------------------------------
# Composite actions
# ---------------------------------------------------------------------------


@dataclass
class CompositeAction:
    name: str
    path: Path
    inputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    steps: list[StepDefinition] = field(default_factory=list)

    def resolve_inputs(self, provided: dict[str, Any]) -> dict[str, Any]:
        unknown = set(provided) - set(self.inputs)
        if unknown:
            logger.warning(
                f"Unexpected input(s) for action '{self.name}': {', '.join(sorted(unknown))}"
            )
        resolved = dict(provided)
        for name, spec in self.inputs.items():
            if name in resolved:
                continue
            if spec.get("default") is not None:
                resolved[name] = spec["default"]
            elif spec.get("required"):
                raise ActionError(f"Input required and not supplied: {name}")
            else:
                resolved[name] = ""
        return resolved


def load_composite(path: Path) -> CompositeAction:
    """Load ``action.yml`` / ``action.yaml`` from a local action directory."""
    for filename in ("action.yml", "action.yaml"):
        candidate = path / filename
        if candidate.is_file():
            break
    else:
        raise ActionNotFound(f"No action.yml found in '{path}'")

    try:
        with candidate.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ActionError(f"Invalid action metadata in '{candidate}': {e}") from e
    runs = data.get("runs") or {}
    if runs.get("using") != "composite":
        raise ActionNotFound(
            f"Action '{path}' uses '{runs.get('using')}'; only composite actions run locally"
        )
    steps = [_parse_step(s or {}, i) for i, s in enumerate(runs.get("steps") or [])]
    for step in steps:
        if step.run and not step.shell:
            raise ActionError(f"Composite action '{path}': run steps must declare 'shell'")
    return CompositeAction(
        name=str(data.get("name") or path.name),
        path=path,
        inputs={str(k): dict(v or {}) for k, v in (data.get("inputs") or {}).items()},
        outputs={str(k): dict(v or {}) for k, v in (data.get("outputs") or {}).items()},
        steps=steps,
    )


# ---------------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------------


@register_action("actions/checkout")
async def checkout(rt: ActionRuntime) -> None:
    """The workspace already is the checkout; only report it."""
    rt.log.write(f"Using local workspace {rt.workspace}")
    rt.set_output("ref", rt.context.github.get("ref", ""))
    rt.set_output("commit", rt.context.github.get("sha", ""))


def _cache_request(rt: ActionRuntime) -> tuple[str, list[str], list[str], str]:
    try:
        key, chain = cache_mod.resolve(
            rt.input("key", required=True), rt.input("restore-keys"), rt.context
        )
    except cache_mod.CacheKeyError as e:
        raise ActionError(str(e)) from e
    paths = cache_mod.parse_path_list(rt.input("path", required=True))
    if not paths:
        raise ActionError("Input required and not supplied: path")
    scope = str(rt.context.github.get("ref") or "")
    return key, chain, paths, scope


async def _restore(rt: ActionRuntime, key: str, chain: list[str], paths: list[str],
                   scope: str) -> cache_mod.CacheResult:
    store = rt.services.cache
    if rt.bool_input("lookup-only"):
        result = await store.lookup(key, chain, scope)
    else:
        result = await store.restore(
            key, chain, scope,
            [cache_mod.resolve_cache_path(p, rt.workspace) for p in paths],
        )
    rt.set_output("cache-hit", "true" if result.hit else "false")
    rt.set_output("cache-primary-key", key)
    rt.set_output("cache-hit-key", result.matched_key or "")
    rt.set_output("cache-matched-key", result.matched_key or "")
    if result.entry is None:
        rt.log.write(f"Cache not found for input keys: {', '.join([key, *chain])}")
        if rt.bool_input("fail-on-cache-miss"):
            raise ActionError(f"Failed to restore cache entry. Exiting as fail-on-cache-miss is set. Input key: {key}")
    else:
        rt.log.write(f"Cache restored from key: {result.matched_key}")
        rt.services.publish("cache.restored", {"key": result.matched_key, "hit": result.hit})
    return result


async def _save(rt: ActionRuntime, key: str, paths: list[str], scope: str) -> None:
    entry = await rt.services.cache.save(key, scope, paths, rt.workspace)
    if entry is None:
        rt.log.write(f"Cache not saved for key: {key}")
    else:
        rt.log.write(f"Cache saved with key: {key}")
        rt.services.publish("cache.saved", {"key": key, "size": entry.size})


@register_action("actions/cache")
async def cache(rt: ActionRuntime) -> None:
    """Restore now; save in a post step unless the primary key was an exact hit."""
    key, chain, paths, scope = _cache_request(rt)
    result = await _restore(rt, key, chain, paths, scope)
    if result.hit or rt.bool_input("lookup-only"):
        return

    async def save_post(post_rt: ActionRuntime) -> None:
        await _save(post_rt, key, paths, scope)

    rt.register_post(save_post, "success()")


@register_action("actions/cache/restore")
async def cache_restore(rt: ActionRuntime) -> None:
    key, chain, paths, scope = _cache_request(rt)
    await _restore(rt, key, chain, paths, scope)


@register_action("actions/cache/save")
async def cache_save(rt: ActionRuntime) -> None:
    key, _, paths, scope = _cache_request(rt)
    await _save(rt, key, paths, scope)


@register_action("actions/upload-artifact")
async def upload_artifact(rt: ActionRuntime) -> None:
    name = str(rt.input("name", "artifact"))
    paths = cache_mod.parse_path_list(rt.input("path", required=True))
    retention = rt.input("retention-days")
    try:
        info = await rt.services.artifacts.upload(
            name,
            paths,
            rt.workspace,
            if_no_files_found=str(rt.input("if-no-files-found", "warn")),
            retention_days=int(retention) if retention else None,
            overwrite=rt.bool_input("overwrite"),
        )
    except NoFilesFound as e:
        raise ActionError(str(e)) from e
    if info is None:
        if rt.input("if-no-files-found", "warn") == "warn":
            rt.log.annotate("warning", f"No files were found with the provided path: {', '.join(paths)}. No artifacts will be uploaded.")
        return
    rt.log.write(f"Artifact {name} uploaded: {len(info.files)} file(s), {info.size} bytes")
    rt.set_output("artifact-id", f"{info.run_id}/{info.name}")
    rt.services.publish("artifact.uploaded", {"name": name, "size": info.size})


@register_action("actions/download-artifact")
async def download_artifact(rt: ActionRuntime) -> None:
    name = rt.input("name")
    target = Path(str(rt.input("path", "."))).expanduser()
    if not target.is_absolute():
        target = rt.workspace / target
    try:
        files = await rt.services.artifacts.download(name, target)
    except ArtifactNotFound as e:
        raise ActionError(str(e)) from e
    rt.log.write(f"Downloaded {len(files)} file(s) to {target}")
    rt.set_output("download-path", str(target))
