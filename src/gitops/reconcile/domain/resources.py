"""Resource model and ownership tagging.

A resource is identified by its (namespace, kind, name) tuple. Everything the
engine applies is stamped with an ownership marker so later runs can tell
tracked resources from foreign ones:

    metadata.annotations["gitops.reconciler/tracking-id"] =
        "<application>:<group>/<kind>:<namespace>/<name>"
"""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

TRACKING_ANNOTATION = "gitops.reconciler/tracking-id"
SYNC_WAVE_ANNOTATION = "gitops.reconciler/sync-wave"
DEPENDS_ON_ANNOTATION = "gitops.reconciler/depends-on"
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

# Kinds that never live inside a namespace
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "APIService",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "MutatingWebhookConfiguration",
        "Namespace",
        "PersistentVolume",
        "PriorityClass",
        "StorageClass",
        "ValidatingWebhookConfiguration",
    }
)


def api_group(api_version: str) -> str:
    """Return the API group of an apiVersion ("apps/v1" -> "apps", "v1" -> "")."""
    if "/" in api_version:
        return api_version.split("/", 1)[0]
    return ""


def scoped_namespace(kind: str, namespace: Optional[str], default_namespace: str) -> str:
    """Resolve the namespace a resource lives in."""
    if kind in CLUSTER_SCOPED_KINDS:
        return ""
    return namespace or default_namespace


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity tuple of a resource. Equality ignores apiVersion."""

    namespace: str
    kind: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_namespace: str = "") -> "ResourceKey":
        """Parse "Kind/name" or "Kind/namespace/name"."""
        parts = value.strip().split("/")
        if len(parts) == 2:
            kind, name = parts
            return cls(scoped_namespace(kind, None, default_namespace), kind, name)
        if len(parts) == 3:
            kind, namespace, name = parts
            return cls(namespace, kind, name)
        raise ValueError(f"Invalid resource reference: {value!r}")


@dataclass(frozen=True)
class OwnershipMarker:
    """Records which Application last applied a resource."""

    application: str
    tracking_key: str

    @classmethod
    def for_resource(cls, application: str, api_version: str, key: ResourceKey) -> "OwnershipMarker":
        group = api_group(api_version)
        return cls(
            application=application,
            tracking_key=f"{group}/{key.kind}:{key.namespace}/{key.name}",
        )

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["OwnershipMarker"]:
        """Parse an annotation value; malformed values count as untagged."""
        if not value or ":" not in value:
            return None
        application, tracking_key = value.split(":", 1)
        if not application or not tracking_key:
            return None
        return cls(application=application, tracking_key=tracking_key)

    def to_annotation(self) -> str:
        return f"{self.application}:{self.tracking_key}"

    def names(self, application: str) -> bool:
        return self.application == application


def compute_hash(content: Any) -> str:
    """Stable sha256 over canonical JSON."""
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ResourceManifest:
    """A desired resource produced by the Source Provider for one revision.

    ``content`` is a private deep copy and must not be mutated. ``index`` is
    the position in the Source Provider's ordered output. ``invalid_reason``
    is set when the identity is usable but the content is not; such a
    manifest is diffed like any other but never applied.
    """

    api_version: str
    key: ResourceKey
    content: dict[str, Any] = field(compare=False, repr=False)
    content_hash: str = ""
    index: int = 0
    invalid_reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.invalid_reason is None

    @property
    def kind(self) -> str:
        return self.key.kind

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def annotations(self) -> dict[str, str]:
        annotations = (self.content.get("metadata") or {}).get("annotations")
        return annotations if isinstance(annotations, dict) else {}

    @property
    def sync_wave(self) -> int:
        raw = self.annotations.get(SYNC_WAVE_ANNOTATION)
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    @property
    def depends_on(self) -> list[ResourceKey]:
        raw = str(self.annotations.get(DEPENDS_ON_ANNOTATION, ""))
        keys = []
        for ref in (p.strip() for p in raw.split(",")):
            if ref and ref.count("/") in (1, 2):
                keys.append(ResourceKey.parse(ref, self.key.namespace))
        return keys

    def owned_by(self, application: str) -> dict[str, Any]:
        """Return a copy of the content stamped with the ownership marker."""
        stamped = copy.deepcopy(self.content)
        metadata = stamped.setdefault("metadata", {})
        if self.key.namespace:
            metadata["namespace"] = self.key.namespace
        else:
            metadata.pop("namespace", None)
        annotations = metadata.setdefault("annotations", {})
        marker = OwnershipMarker.for_resource(application, self.api_version, self.key)
        annotations[TRACKING_ANNOTATION] = marker.to_annotation()
        return stamped


@dataclass
class LiveResource:
    """The observed state of a resource in the destination."""

    api_version: str
    key: ResourceKey
    content: dict[str, Any] = field(default_factory=dict, repr=False)
    owner: Optional[OwnershipMarker] = None

    @classmethod
    def from_object(cls, obj: dict[str, Any], default_namespace: str = "") -> "LiveResource":
        """Build a LiveResource from a raw object, reading its ownership marker."""
        metadata = obj.get("metadata") or {}
        kind = obj.get("kind", "")
        key = ResourceKey(
            namespace=scoped_namespace(kind, metadata.get("namespace"), default_namespace),
            kind=kind,
            name=metadata.get("name", ""),
        )
        annotations = metadata.get("annotations") or {}
        return cls(
            api_version=obj.get("apiVersion", ""),
            key=key,
            content=obj,
            owner=OwnershipMarker.parse(annotations.get(TRACKING_ANNOTATION)),
        )

    @property
    def status(self) -> dict[str, Any]:
        return self.content.get("status") or {}

    @property
    def spec(self) -> dict[str, Any]:
        return self.content.get("spec") or {}

    @property
    def metadata(self) -> dict[str, Any]:
        return self.content.get("metadata") or {}

    @property
    def sync_wave(self) -> int:
        annotations = self.metadata.get("annotations") or {}
        try:
            return int(annotations.get(SYNC_WAVE_ANNOTATION, 0))
        except (TypeError, ValueError):
            return 0

    def is_owned_by(self, application: str) -> bool:
        """True when the marker names the application and this very resource.

        A marker copied onto another resource does not confer ownership.
        """
        if self.owner is None or not self.owner.names(application):
            return False
        expected = OwnershipMarker.for_resource(application, self.api_version, self.key)
        return expected.tracking_key == self.owner.tracking_key
