"""Render the desired resources of a managed object.

Builders are pure: they never touch the store and return the same documents
for the same spec and inputs. Any error is raised as a BuildException which
the controllers treat as terminal.
"""

from abc import ABC, abstractmethod
import copy
from dataclasses import dataclass, field
import hashlib
import logging
import re
from typing import Any

import yaml

from .annotations import DISABLED_VALUE, RECONCILE_ANNOTATION
from .exceptions import BuildException
from .manifest import FluxInstance, ResourceGroupSpec

__all__ = [
    "Builder",
    "ResourceGroupBuilder",
    "BuildResult",
    "DistributionBuilder",
    "StaticDistributionBuilder",
    "match_version",
    "is_compatible_version",
]

_LOGGER = logging.getLogger(__name__)

_INPUT_EXPR = re.compile(r"<<\s*inputs\.([A-Za-z_][A-Za-z0-9_]*)\s*>>")
_TEMPLATE_DELIM = re.compile(r"<<|>>")
_VERSION = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")
_VERSION_EXPR = re.compile(r"^v?(\d+|x|\*)(?:\.(\d+|x|\*))?(?:\.(\d+|x|\*))?$")


class Builder(ABC):
    """Renders resource documents from a spec and a set of inputs."""

    @abstractmethod
    def render(self, spec: Any, inputs: list[dict[str, str]]) -> list[dict[str, Any]]:
        """Return the rendered resource documents."""


def _render_value(value: Any, inputs: dict[str, str] | None, path: str) -> Any:
    if isinstance(value, dict):
        return {
            _render_value(k, inputs, path): _render_value(v, inputs, f"{path}.{k}")
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_render_value(v, inputs, f"{path}[{i}]") for i, v in enumerate(value)]
    if not isinstance(value, str):
        return value

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if inputs is None or key not in inputs:
            raise BuildException(f"failed to execute template {path}: input {key!r} not set")
        return str(inputs[key])

    rendered = _INPUT_EXPR.sub(replace, value)
    if _TEMPLATE_DELIM.search(rendered):
        raise BuildException(f"failed to parse template {path}: {value!r}")
    return rendered


def _identity(doc: dict[str, Any]) -> tuple[str, str, str, str]:
    metadata = doc.get("metadata") or {}
    return (
        doc.get("apiVersion", ""),
        doc.get("kind", ""),
        metadata.get("namespace", ""),
        metadata.get("name", ""),
    )


class ResourceGroupBuilder(Builder):
    """Renders the resource templates of a ResourceGroup.

    Template expressions use `<< inputs.key >>`. Each resource is rendered
    once per input set, or once without inputs when there are none. Rendered
    resources annotated with reconcile disabled are left out and duplicates
    are dropped.
    """

    def render(
        self, spec: ResourceGroupSpec, inputs: list[dict[str, str]]
    ) -> list[dict[str, Any]]:
        objects: list[dict[str, Any]] = []
        seen: set[tuple[str, str, str, str]] = set()
        for i, template in enumerate(spec.resources):
            if not isinstance(template, dict):
                raise BuildException(f"failed to build resources[{i}]: not a mapping")
            for input_set in inputs or [None]:  # type: ignore[list-item]
                doc = _render_value(copy.deepcopy(template), input_set, f"resources[{i}]")
                annotations = (doc.get("metadata") or {}).get("annotations") or {}
                if annotations.get(RECONCILE_ANNOTATION) == DISABLED_VALUE:
                    continue
                if (key := _identity(doc)) in seen:
                    continue
                seen.add(key)
                objects.append(doc)
        return objects


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse a `vMAJOR.MINOR.PATCH` version."""
    if not (match := _VERSION.match(version.strip())):
        raise BuildException(f"invalid version {version!r}")
    return (int(match.group(1)), int(match.group(2)), int(match.group(3)))


def match_version(available: list[str], expr: str) -> str:
    """Return the highest available version matching a version expression.

    Expressions are exact versions (`2.3.0`) or use `x` wildcards (`2.x`,
    `2.3.x`). An empty expression or `*` matches anything.
    """
    expr = expr.strip()
    if expr in ("", "*"):
        parts: list[str | None] = [None, None, None]
    elif match := _VERSION_EXPR.match(expr):
        parts = [
            None if p in (None, "x", "*") else p for p in match.groups()
        ]
    else:
        raise BuildException(f"invalid version expression {expr!r}")

    candidates = []
    for version in available:
        parsed = parse_version(version)
        if all(p is None or int(p) == v for p, v in zip(parts, parsed)):
            candidates.append((parsed, version))
    if not candidates:
        raise BuildException(f"no match found for version {expr}")
    return max(candidates)[1]


def is_compatible_version(from_revision: str, to_version: str) -> None:
    """Raise a BuildException when moving to to_version is a downgrade."""
    current = from_revision.split("@", 1)[0]
    if parse_version(to_version) < parse_version(current):
        raise BuildException(
            f"downgrade from {current} to {to_version} is not supported, "
            "reinstall needed"
        )


@dataclass
class BuildResult:
    """Rendered distribution."""

    version: str
    """Resolved distribution version e.g. `v2.3.0`."""

    revision: str
    """Version and digest of the rendered manifests, `<version>@sha256:<hex>`."""

    objects: list[dict[str, Any]] = field(default_factory=list)


class DistributionBuilder(ABC):
    """Renders the manifests of a software distribution for an installer."""

    @abstractmethod
    def available_versions(self) -> list[str]:
        """Versions that can be installed."""

    @abstractmethod
    def build(self, instance: FluxInstance, version: str) -> BuildResult:
        """Render the manifests of the given resolved version."""

    def resolve_version(self, instance: FluxInstance) -> str:
        return match_version(self.available_versions(), instance.spec.distribution.version)

    def latest_version(self) -> str:
        return match_version(self.available_versions(), "*")


def _apply_patches(objects: list[dict[str, Any]], patches: list[dict[str, Any]]) -> None:
    """Apply merge patches selected by kind and name."""
    for i, patch in enumerate(patches):
        target = patch.get("target")
        body = patch.get("patch")
        if not isinstance(target, dict) or not target.get("kind"):
            raise BuildException(f"invalid patch[{i}]: target kind is required")
        if isinstance(body, str):
            try:
                body = yaml.safe_load(body)
            except yaml.YAMLError as err:
                raise BuildException(f"invalid patch[{i}]: {err}") from err
        if not isinstance(body, dict):
            raise BuildException(f"invalid patch[{i}]: patch must be a mapping")
        matched = False
        for obj in objects:
            if obj.get("kind") != target["kind"]:
                continue
            if (name := target.get("name")) and obj["metadata"].get("name") != name:
                continue
            _merge(obj, body)
            matched = True
        if not matched:
            raise BuildException(f"invalid patch[{i}]: no resource matches {target}")


def _merge(target: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class StaticDistributionBuilder(DistributionBuilder):
    """Builds a distribution from in memory manifests keyed by version.

    Manifests select their component with the `app.kubernetes.io/component`
    label, resources without it are always installed. Container images are
    rewritten to the distribution registry.
    """

    def __init__(self, manifests: dict[str, list[dict[str, Any]]]) -> None:
        self._manifests = manifests

    def available_versions(self) -> list[str]:
        return list(self._manifests)

    def build(self, instance: FluxInstance, version: str) -> BuildResult:
        if version not in self._manifests:
            raise BuildException(f"distribution version {version} not found")
        components = set(instance.get_components())
        objects = []
        for doc in copy.deepcopy(self._manifests[version]):
            labels = (doc.get("metadata") or {}).get("labels") or {}
            if (component := labels.get("app.kubernetes.io/component")) and (
                component not in components
            ):
                continue
            doc.setdefault("metadata", {})
            if doc.get("kind") != "Namespace":
                doc["metadata"]["namespace"] = instance.namespace
            self._set_registry(doc, instance.spec.distribution.registry)
            objects.append(doc)
        if instance.spec.kustomize is not None:
            _apply_patches(objects, instance.spec.kustomize.patches)

        data = yaml.dump_all(objects, sort_keys=True).encode()
        digest = hashlib.sha256(data).hexdigest()
        _LOGGER.debug("Built %d objects for version %s", len(objects), version)
        return BuildResult(
            version=version, revision=f"{version}@sha256:{digest}", objects=objects
        )

    @staticmethod
    def _set_registry(doc: dict[str, Any], registry: str) -> None:
        pod_spec = ((doc.get("spec") or {}).get("template") or {}).get("spec") or {}
        for container in pod_spec.get("containers") or []:
            if image := container.get("image"):
                container["image"] = f"{registry}/{image.rsplit('/', 1)[-1]}"
