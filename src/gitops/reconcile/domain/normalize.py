"""Content normalization used by the Diff Engine.

Desired and live objects are compared only after the fields the runtime
injects on its own are stripped, and after caller-supplied ignore rules are
applied. Live content is then projected onto the desired field set, so
server-side defaults never count as drift.
"""

import copy
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .resources import LAST_APPLIED_ANNOTATION, TRACKING_ANNOTATION, compute_hash

RUNTIME_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
)

RUNTIME_ANNOTATIONS = (LAST_APPLIED_ANNOTATION, TRACKING_ANNOTATION)

_MISSING = object()


@dataclass(frozen=True)
class IgnoreRule:
    """A JSON pointer excluded from comparison, optionally for one kind only.

    Textual form: "/spec/replicas" or "Deployment:/spec/replicas".
    """

    pointer: str
    kind: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "IgnoreRule":
        value = value.strip()
        kind = None
        if not value.startswith("/") and ":" in value:
            kind, value = value.split(":", 1)
        if not value.startswith("/"):
            raise ValueError(f"Ignore path must be a JSON pointer: {value!r}")
        return cls(pointer=value, kind=kind or None)

    @property
    def segments(self) -> list[str]:
        return [s.replace("~1", "/").replace("~0", "~") for s in self.pointer.split("/")[1:]]

    def applies_to(self, kind: str) -> bool:
        return self.kind is None or self.kind == kind

    def __str__(self) -> str:
        if self.kind:
            return f"{self.kind}:{self.pointer}"
        return self.pointer


@dataclass(frozen=True)
class FieldChange:
    """One field-level difference, for reporting only."""

    path: str
    desired: Any
    live: Any

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "desired": self.desired, "live": self.live}


def _remove_pointer(obj: Any, segments: list[str]) -> None:
    if not segments:
        return
    head, rest = segments[0], segments[1:]
    if isinstance(obj, dict):
        if head not in obj:
            return
        if rest:
            _remove_pointer(obj[head], rest)
        else:
            del obj[head]
    elif isinstance(obj, list):
        if head == "*":
            for item in obj:
                _remove_pointer(item, rest)
            return
        if not head.isdigit() or int(head) >= len(obj):
            return
        if rest:
            _remove_pointer(obj[int(head)], rest)
        else:
            del obj[int(head)]


def normalize(
    content: dict[str, Any],
    kind: str = "",
    ignore_rules: Iterable[IgnoreRule] = (),
) -> dict[str, Any]:
    """Return a copy of content without runtime-injected or ignored fields."""
    result = copy.deepcopy(content)
    result.pop("status", None)

    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for name in RUNTIME_METADATA_FIELDS:
            metadata.pop(name, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            for name in RUNTIME_ANNOTATIONS:
                annotations.pop(name, None)
            if not annotations:
                metadata.pop("annotations")
        if metadata.get("labels") == {}:
            metadata.pop("labels")

    for rule in ignore_rules:
        if rule.applies_to(kind):
            _remove_pointer(result, rule.segments)

    return result


def project(live: Any, desired: Any) -> Any:
    """Restrict live content to the fields present in desired content."""
    if isinstance(desired, dict) and isinstance(live, dict):
        return {k: project(live[k], v) for k, v in desired.items() if k in live}
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        return [project(lv, dv) for lv, dv in zip(live, desired)]
    return live


def desired_hash(content: dict[str, Any], kind: str, ignore_rules: Iterable[IgnoreRule] = ()) -> str:
    return compute_hash(normalize(content, kind, ignore_rules))


def live_hash(
    live_content: dict[str, Any],
    desired_content: dict[str, Any],
    kind: str,
    ignore_rules: Iterable[IgnoreRule] = (),
) -> str:
    rules = list(ignore_rules)
    normalized_desired = normalize(desired_content, kind, rules)
    normalized_live = normalize(live_content, kind, rules)
    return compute_hash(project(normalized_live, normalized_desired))


def field_changes(desired: Any, live: Any, path: str = "") -> list[FieldChange]:
    """Walk desired content and report every field live does not match."""
    if isinstance(desired, dict) and isinstance(live, dict):
        changes: list[FieldChange] = []
        for key, value in desired.items():
            child = f"{path}/{str(key).replace('~', '~0').replace('/', '~1')}"
            live_value = live.get(key, _MISSING)
            if live_value is _MISSING:
                changes.append(FieldChange(child, value, None))
            else:
                changes.extend(field_changes(value, live_value, child))
        return changes
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        changes = []
        for i, (d, lv) in enumerate(zip(desired, live)):
            changes.extend(field_changes(d, lv, f"{path}/{i}"))
        return changes
    if desired != live:
        return [FieldChange(path or "/", desired, live)]
    return []
