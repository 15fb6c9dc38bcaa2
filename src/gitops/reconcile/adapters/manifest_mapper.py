"""Manifest mapper adapter for turning raw source output into domain manifests.

This adapter implements IManifestMapper and encapsulates all parsing and
validation of the raw objects a Source Provider returns.
"""

import copy
import re
from typing import Any, Optional

from ...common.exceptions import ManifestInvalid
from ..domain.normalize import desired_hash
from ..domain.ports import IManifestMapper
from ..domain.resources import (
    DEPENDS_ON_ANNOTATION,
    SYNC_WAVE_ANNOTATION,
    ResourceKey,
    ResourceManifest,
    scoped_namespace,
)

# RFC 1123 subdomain, as used for most resource names
DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
MAX_NAME_LENGTH = 253


class ManifestMapper(IManifestMapper):
    """Maps raw manifest dictionaries to ResourceManifest entities.

    This class handles:
    - Identity extraction (apiVersion, kind, namespace, name)
    - Namespace defaulting and cluster-scoped kinds
    - Content validation (name format, spec shape, ordering annotations)
    - Content hashing over normalized content

    A manifest without a usable identity raises ManifestInvalid. A manifest
    with an identity but bad content is returned with ``invalid_reason`` set.
    """

    def map_to_manifest(
        self,
        raw: Any,
        index: int,
        default_namespace: str,
    ) -> ResourceManifest:
        if not isinstance(raw, dict):
            raise ManifestInvalid(f"Manifest #{index} is not a mapping")

        api_version = raw.get("apiVersion")
        kind = raw.get("kind")
        metadata = raw.get("metadata")
        if not isinstance(metadata, dict):
            raise ManifestInvalid(f"Manifest #{index} has no metadata")
        name = metadata.get("name")

        missing = [
            field_name
            for field_name, value in (("apiVersion", api_version), ("kind", kind), ("metadata.name", name))
            if not isinstance(value, str) or not value
        ]
        if missing:
            raise ManifestInvalid(
                f"Manifest #{index} is missing {', '.join(missing)}",
                details={"missing": missing},
            )

        key = ResourceKey(
            namespace=scoped_namespace(kind, metadata.get("namespace"), default_namespace),
            kind=kind,
            name=name,
        )

        content = copy.deepcopy(raw)
        return ResourceManifest(
            api_version=api_version,
            key=key,
            content=content,
            content_hash=desired_hash(content, kind),
            index=index,
            invalid_reason=self._validate_content(raw, key),
        )

    def _validate_content(self, raw: dict[str, Any], key: ResourceKey) -> Optional[str]:
        if len(key.name) > MAX_NAME_LENGTH or not DNS1123_SUBDOMAIN.match(key.name):
            return f"Invalid resource name {key.name!r}"

        if "spec" in raw and not isinstance(raw["spec"], dict):
            return "spec must be a mapping"

        annotations = (raw.get("metadata") or {}).get("annotations") or {}
        if not isinstance(annotations, dict):
            return "metadata.annotations must be a mapping"

        wave = annotations.get(SYNC_WAVE_ANNOTATION)
        if wave is not None:
            try:
                int(wave)
            except (TypeError, ValueError):
                return f"Invalid sync wave {wave!r}"

        depends_on = annotations.get(DEPENDS_ON_ANNOTATION)
        if depends_on is not None:
            for ref in (p.strip() for p in str(depends_on).split(",")):
                if ref and ref.count("/") not in (1, 2):
                    return f"Invalid dependency reference {ref!r}"

        return None
