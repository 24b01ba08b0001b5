"""Allow-list sanitization policy.

Default-deny: any tag, attribute or URL scheme not listed here is stripped by
the pipeline's sanitize stage. The schema is immutable and built once per
execution unit.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional


# Attribute key that applies to every allowed tag.
ANY_TAG = "*"

_DEFAULT_TAGS = (
    # headings
    "h1", "h2", "h3", "h4", "h5", "h6",
    # paragraphs and breaks
    "p", "br", "hr",
    # inline emphasis
    "strong", "em", "b", "i", "u", "s", "del", "ins", "sub", "sup",
    # code
    "code", "pre", "kbd", "samp", "var",
    # quotes
    "blockquote", "cite", "q",
    # lists
    "ul", "ol", "li", "dl", "dt", "dd",
    # tables
    "table", "thead", "tbody", "tfoot", "tr", "th", "td",
    # links and media
    "a", "img",
    # task-list checkboxes; other input types are removed by the sanitize stage
    "input",
    # grouping
    "div", "span", "section", "article", "aside", "nav", "details", "summary",
)

_DEFAULT_ATTRIBUTES = {
    ANY_TAG: ("class", "id"),
    "a": ("href", "title", "target", "rel"),
    "img": ("src", "alt", "title", "width", "height"),
    "input": ("type", "checked", "disabled"),
    "ol": ("start",),
    "th": ("align", "scope"),
    "td": ("align",),
    "table": ("align",),
}

_DEFAULT_PROTOCOLS = {
    "href": ("http", "https", "mailto"),
    "src": ("http", "https"),
}

# Browsers ignore ASCII control characters and whitespace inside a URL scheme
# ("java\tscript:"), so they must not hide one from us either.
_URL_NOISE_RE = re.compile(r"[\x00-\x20\x7f]+")
_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")


def url_scheme(value: str) -> Optional[str]:
    """Return the lower-cased scheme of ``value``, or None for relative URLs."""
    cleaned = _URL_NOISE_RE.sub("", str(value or ""))
    match = _SCHEME_RE.match(cleaned)
    if not match:
        return None
    return match.group(1).lower()


def _freeze_map(raw: Mapping[str, Iterable[str]]) -> Mapping[str, frozenset[str]]:
    return MappingProxyType({str(k).lower(): frozenset(str(v).lower() for v in values) for k, values in raw.items()})


@dataclass(frozen=True)
class SanitizationSchema:
    allowed_tags: frozenset[str]
    allowed_attributes: Mapping[str, frozenset[str]]
    allowed_protocols: Mapping[str, frozenset[str]]

    @classmethod
    def build(
        cls,
        tags: Iterable[str],
        attributes: Mapping[str, Iterable[str]],
        protocols: Mapping[str, Iterable[str]],
    ) -> "SanitizationSchema":
        return cls(
            allowed_tags=frozenset(str(t).lower() for t in tags),
            allowed_attributes=_freeze_map(attributes),
            allowed_protocols=_freeze_map(protocols),
        )

    def allows_tag(self, tag: str) -> bool:
        return (tag or "").lower() in self.allowed_tags

    def allows_attribute(self, tag: str, attribute: str) -> bool:
        attribute = (attribute or "").lower()
        if attribute in self.allowed_attributes.get((tag or "").lower(), frozenset()):
            return True
        return attribute in self.allowed_attributes.get(ANY_TAG, frozenset())

    def allows_url(self, attribute: str, value: str) -> bool:
        """Check a URL-bearing attribute value against the scheme allow-list.

        Attributes without a protocol entry are not URL-bearing and always pass.
        Relative URLs and fragments carry no scheme and are allowed.
        """
        protocols = self.allowed_protocols.get((attribute or "").lower())
        if protocols is None:
            return True
        scheme = url_scheme(value)
        return scheme is None or scheme in protocols

    def to_dict(self) -> dict:
        return {
            "allowed_tags": sorted(self.allowed_tags),
            "allowed_attributes": {k: sorted(v) for k, v in sorted(self.allowed_attributes.items())},
            "allowed_protocols": {k: sorted(v) for k, v in sorted(self.allowed_protocols.items())},
        }


DEFAULT_SCHEMA = SanitizationSchema.build(_DEFAULT_TAGS, _DEFAULT_ATTRIBUTES, _DEFAULT_PROTOCOLS)


def load_schema(path: Optional[Path] = None) -> SanitizationSchema:
    """Load the sanitization schema.

    Without a path the built-in allow-lists are used. A JSON file must carry
    ``allowed_tags`` (list), ``allowed_attributes`` and ``allowed_protocols``
    (objects mapping a tag or attribute to a list of names).
    """
    if path is None:
        return DEFAULT_SCHEMA

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Sanitization schema must be a JSON object")

    tags = data.get("allowed_tags")
    attributes = data.get("allowed_attributes", {})
    protocols = data.get("allowed_protocols", {})
    if not isinstance(tags, list) or not tags:
        raise ValueError("allowed_tags must be a non-empty list")
    for key, value in (("allowed_attributes", attributes), ("allowed_protocols", protocols)):
        if not isinstance(value, dict) or not all(isinstance(v, list) for v in value.values()):
            raise ValueError(f"{key} must map names to lists")

    return SanitizationSchema.build(tags, attributes, protocols)
