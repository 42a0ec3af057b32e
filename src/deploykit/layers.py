"""Layered configuration from ConfigMaps and Secrets.

A branch decides which cluster config sources are read and in which order:

    general             shared by every branch (lowest precedence)
    <base>              e.g. "beta" for "beta/api"
    <sanitized branch>  e.g. "beta-api", only when the branch has a suffix
    <base> secret       optional overlay, highest precedence

Layers are applied in declaration order and later layers clobber earlier
ones for the same key (last-write-wins).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .identity import sanitize_branch, strip_origin
from .shell import CommandError, run_command

logger = logging.getLogger(__name__)

DEFAULT_GENERAL_LAYER = "general"
KUBECTL_TIMEOUT_SECONDS = 60


class LayerKind(str, Enum):
    """Cluster object a layer is read from."""

    CONFIGMAP = "configmap"
    SECRET = "secret"


class KeyScope(Enum):
    ALL = "all"


# Take every key the source holds
ALL_KEYS = KeyScope.ALL


@dataclass(frozen=True)
class ConfigLayer:
    """One source in a plan and the keys it contributes."""

    source_name: str
    kind: LayerKind = LayerKind.CONFIGMAP
    keys: frozenset[str] | KeyScope = ALL_KEYS

    def select(self, data: Mapping[str, bytes]) -> dict[str, bytes]:
        """Filter source data down to this layer's keys."""
        if self.keys is ALL_KEYS:
            return dict(data)
        return {k: v for k, v in data.items() if k in self.keys}


LayerLookup = Callable[[ConfigLayer], "Mapping[str, bytes] | None"]


@dataclass(frozen=True)
class ConfigLayerPlan:
    """Ordered layers, lowest precedence first."""

    layers: tuple[ConfigLayer, ...]

    def __iter__(self):
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self.layers)

    @property
    def names(self) -> list[str]:
        return [layer.source_name for layer in self.layers]

    def merge(self, lookup: LayerLookup) -> dict[str, bytes]:
        """Apply every layer in order, later layers winning on key collision.

        Args:
            lookup: Returns a layer's key/value data, or None when the
                source does not exist. Missing sources contribute nothing.

        Returns:
            Merged key/value mapping.
        """
        merged: dict[str, bytes] = {}
        for layer in self.layers:
            data = lookup(layer)
            if data is None:
                logger.warning(
                    "Config source not found or empty, skipping",
                    extra={"source": layer.source_name, "kind": layer.kind.value},
                )
                continue
            selected = layer.select(data)
            overridden = sorted(set(selected) & set(merged))
            if overridden:
                logger.debug(
                    "Config keys overridden",
                    extra={"source": layer.source_name, "keys": overridden},
                )
            merged.update(selected)
        return merged


def split_branch(branch_name: str | None) -> tuple[str, str | None]:
    """Split a branch on its first ``/`` into (base, suffix), both lowercased.

    "beta" -> ("beta", None), "origin/prod/worker" -> ("prod", "worker").
    """
    if not branch_name:
        return "", None
    branch_name = strip_origin(branch_name)
    if "/" not in branch_name:
        return branch_name.lower(), None
    base, suffix = branch_name.split("/", 1)
    return base.lower(), suffix.lower() or None


def _dedupe(layers: Iterable[ConfigLayer]) -> tuple[ConfigLayer, ...]:
    seen: set[tuple[LayerKind, str]] = set()
    result = []
    for layer in layers:
        key = (layer.kind, layer.source_name)
        if not layer.source_name or key in seen:
            continue
        seen.add(key)
        result.append(layer)
    return tuple(result)


def plan_config_layers(
    branch_name: str | None,
    *,
    general_name: str = DEFAULT_GENERAL_LAYER,
    branch_layer: str | None = None,
    secret_name: str | None = None,
    include_secret: bool = False,
) -> ConfigLayerPlan:
    """Build the layer plan for a branch.

    Args:
        branch_name: Branch being built, may carry ``origin/``.
        general_name: Name of the shared layer.
        branch_layer: Explicit most-specific ConfigMap, replaces the
            sanitized-branch layer.
        secret_name: Secret overlay name, defaults to the base environment.
        include_secret: Append the Secret overlay as the last layer.

    Returns:
        Plan with duplicate names collapsed to their first position.
    """
    base, suffix = split_branch(branch_name)

    layers = [ConfigLayer(general_name), ConfigLayer(base)]
    if branch_layer:
        layers.append(ConfigLayer(branch_layer))
    elif suffix is not None:
        layers.append(ConfigLayer(sanitize_branch(strip_origin(branch_name or ""))))

    if include_secret:
        layers.append(ConfigLayer(secret_name or base, kind=LayerKind.SECRET))

    return ConfigLayerPlan(_dedupe(layers))


class ConfigStore(Protocol):
    """Anything able to read key/value data of a ConfigMap or Secret."""

    def read(self, namespace: str, layer: ConfigLayer) -> dict[str, bytes] | None: ...


class KubectlConfigStore:
    """ConfigMaps and Secrets read through ``kubectl get -o json``."""

    def __init__(self, kubectl: str = "kubectl") -> None:
        self._kubectl = kubectl

    def read(self, namespace: str, layer: ConfigLayer) -> dict[str, bytes] | None:
        cmd = [
            self._kubectl,
            "get",
            layer.kind.value,
            layer.source_name,
            "-n",
            namespace,
            "-o",
            "json",
        ]
        try:
            result = run_command(cmd, timeout=KUBECTL_TIMEOUT_SECONDS, capture=True)
        except CommandError as e:
            if "NotFound" in e.stderr or "not found" in e.stderr:
                return None
            raise

        try:
            obj = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise CommandError(f"kubectl returned invalid JSON for {layer.source_name}") from e

        data = obj.get("data") or {}
        if not data:
            return None
        if layer.kind is LayerKind.SECRET:
            return {k: _decode_secret_value(layer.source_name, k, v) for k, v in data.items()}
        return {k: str(v).encode() for k, v in data.items()}


def _decode_secret_value(secret_name: str, key: str, value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CommandError(f"Secret {secret_name} key {key} is not valid base64") from e


def fetch_config(
    store: ConfigStore,
    namespace: str,
    plan: ConfigLayerPlan,
) -> dict[str, bytes]:
    """Read every layer of ``plan`` from the store and merge them."""
    logger.info(
        "Fetching layered configuration",
        extra={"namespace": namespace, "layers": plan.names},
    )
    return plan.merge(lambda layer: store.read(namespace, layer))


def materialize(
    merged: Mapping[str, bytes],
    workspace: Path | str,
    destinations: Mapping[str, str] | None = None,
) -> list[Path]:
    """Write merged keys as files below ``workspace``.

    Args:
        merged: Key/value data from ``ConfigLayerPlan.merge``.
        workspace: Directory the files are written to.
        destinations: Optional key -> relative path mapping. Keys without
            an entry are written under their own name.

    Returns:
        Paths written. Empty values are skipped.
    """
    root = Path(workspace).resolve()
    written: list[Path] = []

    for key, value in sorted(merged.items()):
        if not value:
            logger.warning("Config key is empty, skipping", extra={"key": key})
            continue

        dest = (root / (destinations or {}).get(key, key)).resolve()
        if not dest.is_relative_to(root):
            raise ValueError(f"Config key {key} escapes the workspace")

        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(value)
        written.append(dest)

        logger.info(
            "Wrote config file",
            extra={
                "path": str(dest.relative_to(root)),
                "bytes": len(value),
                "sha256": hashlib.sha256(value).hexdigest(),
            },
        )

    return written
