"""Normalize IIIF Presentation v2 and v3 manifests into one internal shape.

The helpers operate on already-decoded JSON only; network IO and the decision
to skip a manifest belong to the pipeline. Every optional step returns None
when the data is absent, and callers compose the steps with ``or`` fallbacks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Final
from urllib.parse import quote, urlsplit

from .config_manager import IDENTIFIER_PLACEHOLDER
from .models import LABEL_MAX_CHARS, DisplayRecord
from .utils import url_origin

V3_CONTEXT_MARKER: Final = "presentation/3"
IMAGE_SERVICE_V3_TYPE: Final = "ImageService3"
UNTITLED: Final = "Untitled"
NO_RELATED_URL: Final = "#"
IDENTIFIER_LABELS: Final = frozenset({"dcterms:identifier", "identifier"})


class ManifestVersion(str, Enum):
    V2 = "2"
    V3 = "3"


class ManifestStructureError(ValueError):
    """The manifest lacks a structure needed to build a display record."""


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def _dig(node: Any, *path: str | int) -> Any:
    """Follow dict keys / list indexes, returning None at the first missing step."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(node, list) or len(node) <= step:
                return None
            node = node[step]
        else:
            if not isinstance(node, dict):
                return None
            node = node.get(step)
    return node


def _node_id(node: Any) -> str | None:
    """Return a node's `id` (v3) or `@id` (v2) when it is a non-empty string."""
    node = _as_dict(node)
    if node is None:
        return None
    for key in ("id", "@id"):
        value = node.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def detect_version(manifest: dict[str, Any]) -> ManifestVersion:
    """Classify the manifest from its `@context` string."""
    context = manifest.get("@context")
    if isinstance(context, str) and V3_CONTEXT_MARKER in context:
        return ManifestVersion.V3
    return ManifestVersion.V2


def extract_canvases(manifest: dict[str, Any], version: ManifestVersion) -> list[Any]:
    """Return the ordered canvas list (empty when the expected structure is missing)."""
    if version is ManifestVersion.V3:
        canvases = manifest.get("items")
    else:
        canvases = _dig(manifest, "sequences", 0, "canvases")
    return canvases if isinstance(canvases, list) else []


def _v3_image_service(canvas: Any) -> str | None:
    body = _first(_dig(canvas, "items", 0, "items", 0, "body"))
    services = _as_list(_dig(body, "service"))
    for service in services:
        if isinstance(service, dict) and service.get("type") == IMAGE_SERVICE_V3_TYPE:
            return _node_id(service)
    return None


def _v2_image_service(canvas: Any) -> str | None:
    service = _first(_dig(canvas, "images", 0, "resource", "service"))
    value = _dig(service, "@id")
    return value.strip() if isinstance(value, str) and value.strip() else None


def extract_image_service(canvas: Any, version: ManifestVersion) -> str | None:
    """Return the image service base URL of one canvas, or None."""
    if version is ManifestVersion.V3:
        return _v3_image_service(canvas)
    return _v2_image_service(canvas)


def _language_map_text(value: dict[str, Any]) -> str | None:
    for entry in value.values():
        if isinstance(entry, list) and entry and isinstance(entry[0], (str, int, float)):
            return str(entry[0])
    return None


def _text_value(value: Any) -> str | None:
    """Reduce a IIIF label/value (string, language map, `@value` map or list) to text."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        lang_text = _language_map_text(value)
        if lang_text is not None:
            return lang_text
        direct = value.get("@value")
        return str(direct) if direct is not None else None
    if isinstance(value, list) and value:
        return _text_value(value[0])
    return None


def extract_label(manifest: dict[str, Any]) -> str:
    """Return the display label truncated to the stored column width."""
    label = _text_value(manifest.get("label"))
    if label is None:
        label = UNTITLED
    return label[:LABEL_MAX_CHARS]


def extract_identifier(manifest: dict[str, Any]) -> str | None:
    """Return the value of the `dcterms:identifier` / `identifier` metadata entry."""
    for entry in _as_list(manifest.get("metadata")):
        if not isinstance(entry, dict):
            continue
        name = _text_value(entry.get("label"))
        if name is None or name.strip().lower() not in IDENTIFIER_LABELS:
            continue
        value = _text_value(entry.get("value"))
        if value and value.strip():
            return value.strip()
    return None


def _templated_related_url(manifest: dict[str, Any], manifest_url: str, template: str) -> str | None:
    identifier = extract_identifier(manifest)
    if identifier is None:
        return None

    target = template.replace(IDENTIFIER_PLACEHOLDER, quote(identifier, safe=""))
    parts = urlsplit(target)
    if parts.scheme and parts.netloc:
        return target
    if parts.netloc:
        # Protocol-relative template: reuse the manifest's scheme.
        scheme = urlsplit(manifest_url).scheme
        return f"{scheme}:{target}" if scheme and url_origin(manifest_url) else None

    origin = url_origin(manifest_url)
    if origin is None:
        return None
    return f"{origin}/{target.lstrip('/')}"


def _explicit_related_url(manifest: dict[str, Any]) -> str | None:
    related = _first(manifest.get("related"))
    if isinstance(related, str) and related.strip():
        return related.strip()
    related_id = _dig(related, "@id")
    if isinstance(related_id, str) and related_id.strip():
        return related_id.strip()
    return _node_id(_first(manifest.get("homepage")))


def extract_related_url(
    manifest: dict[str, Any],
    version: ManifestVersion,
    manifest_url: str,
    identifier_url_template: str | None = None,
) -> str:
    """Derive the source-page URL shown next to the image.

    Priority:
    1. v3 + template: the metadata identifier substituted into the template,
       resolved against the manifest's own origin when relative
    2. `related.@id`, then `homepage[0].id`
    3. "#"
    """
    templated = None
    if version is ManifestVersion.V3 and identifier_url_template:
        templated = _templated_related_url(manifest, manifest_url, identifier_url_template)
    return templated or _explicit_related_url(manifest) or NO_RELATED_URL


def build_image_url(image_service: str, size: int) -> str:
    """Build a sized IIIF Image API URL for `image_service`."""
    return f"{image_service.rstrip('/')}/full/{size},/0/default.jpg"


@dataclass(frozen=True)
class NormalizedManifest:
    """Version-independent view of one manifest."""

    manifest_url: str
    version: ManifestVersion
    canvases: list[Any]
    label: str
    related_url: str

    def image_service(self, index: int) -> str:
        """Return the image service base of canvas `index`; raise if it has none."""
        service = extract_image_service(self.canvases[index], self.version)
        if not service:
            raise ManifestStructureError(f"canvas {index + 1} of {self.manifest_url} has no image service")
        return service

    def display_record(self, index: int, image_size: int) -> DisplayRecord:
        return DisplayRecord(
            image_url=build_image_url(self.image_service(index), image_size),
            manifest_url=self.manifest_url,
            related_url=self.related_url,
            label=self.label,
        )


def normalize_manifest(
    manifest: Any, manifest_url: str, identifier_url_template: str | None = None
) -> NormalizedManifest:
    """Normalize decoded manifest JSON; raise ManifestStructureError if it has no canvases."""
    if not isinstance(manifest, dict):
        raise ManifestStructureError(f"{manifest_url} is not a JSON object")

    version = detect_version(manifest)
    canvases = extract_canvases(manifest, version)
    if not canvases:
        raise ManifestStructureError(f"{manifest_url} has no canvases (IIIF v{version.value})")

    return NormalizedManifest(
        manifest_url=manifest_url,
        version=version,
        canvases=canvases,
        label=extract_label(manifest),
        related_url=extract_related_url(manifest, version, manifest_url, identifier_url_template),
    )


__all__ = [
    "IMAGE_SERVICE_V3_TYPE",
    "ManifestStructureError",
    "ManifestVersion",
    "NormalizedManifest",
    "build_image_url",
    "detect_version",
    "extract_canvases",
    "extract_identifier",
    "extract_image_service",
    "extract_label",
    "extract_related_url",
    "normalize_manifest",
]
