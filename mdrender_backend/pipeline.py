"""Markdown -> sanitized HTML transformation pipeline.

Five ordered stages, each a method on ``MarkdownPipeline``:

1. parse     markdown text -> markdown-it syntax tree (GFM syntax plugins run here)
2. extend    math and table nodes decorated on the tree
3. convert   markdown tree -> BeautifulSoup structural tree
4. sanitize  allow-list cleaning of the structural tree (bleach)
5. serialize structural tree -> HTML text

A failure in any stage raises one ProcessingError naming the stage; partial
output is never returned.
"""
from __future__ import annotations

import logging
import re
import threading
from html import unescape
from typing import Optional

from bleach.sanitizer import Cleaner
from bs4 import BeautifulSoup
from markdown_it import MarkdownIt
from markdown_it.common.utils import escapeHtml
from markdown_it.tree import SyntaxTreeNode
from mdit_py_plugins.deflist import deflist_plugin
from mdit_py_plugins.dollarmath import dollarmath_plugin
from mdit_py_plugins.footnote import footnote_plugin
from mdit_py_plugins.tasklists import tasklists_plugin

from .errors import ProcessingError
from .policy import DEFAULT_SCHEMA, SanitizationSchema


logger = logging.getLogger(__name__)

STAGES = ("parse", "extend", "convert", "sanitize", "serialize")

CAPABILITIES = (
    "markdown-to-html",
    "tables",
    "strikethrough",
    "autolinks",
    "footnotes",
    "task-lists",
    "definition-lists",
    "math",
    "sanitized-html",
)

_LABEL_RE = re.compile(r"[^a-z0-9\-]+")
_ALIGN_RE = re.compile(r"^text-align:\s*(left|center|right)$")

_MATH_INLINE_TYPES = {"math_inline", "math_inline_double"}
_MATH_BLOCK_TYPES = {"math_block", "math_block_label"}


def _render_math(self, tokens, idx, options, env) -> str:
    # TeX source is kept verbatim (escaped) for a client-side math renderer.
    token = tokens[idx]
    if token.type in _MATH_BLOCK_TYPES:
        return f"<div{self.renderAttrs(token)}>{escapeHtml(token.content.strip())}</div>\n"
    return f"<span{self.renderAttrs(token)}>{escapeHtml(token.content.strip())}</span>"


def _accept_any_link(url: str) -> bool:
    return True


def build_parser() -> MarkdownIt:
    """CommonMark parser with the GFM-style syntax extensions registered.

    Raw HTML is recognised (``html=True``) so that it lands in the structural
    tree and goes through the sanitize stage instead of being echoed as text.
    Link validation is left to the sanitization schema: a link with a blocked
    scheme still becomes an ``<a>`` whose ``href`` is then dropped.
    """
    md = MarkdownIt("commonmark", {"html": True, "linkify": True})
    md.enable(["table", "strikethrough", "linkify"])
    md.validateLink = _accept_any_link
    md.use(tasklists_plugin)
    md.use(footnote_plugin)
    md.use(dollarmath_plugin, double_inline=True)
    md.use(deflist_plugin)
    for name in _MATH_INLINE_TYPES | _MATH_BLOCK_TYPES:
        md.add_render_rule(name, _render_math)
    return md


def build_cleaner(schema: SanitizationSchema = DEFAULT_SCHEMA) -> Cleaner:
    """Return a bleach Cleaner enforcing ``schema``.

    Disallowed elements are stripped but their text is kept; comments are
    dropped. bleach only knows one protocol list, so it gets the union of the
    schema's protocols and the per-attribute lists are checked in the
    attribute filter. A Cleaner is not thread-safe.
    """

    def allow_attribute(tag: str, name: str, value: str) -> bool:
        return schema.allows_attribute(tag, name) and schema.allows_url(name, unescape(value))

    protocols = frozenset().union(*schema.allowed_protocols.values())
    return Cleaner(
        tags=schema.allowed_tags,
        attributes=allow_attribute,
        protocols=protocols,
        strip=True,
        strip_comments=True,
    )


def sanitize_tree(soup: BeautifulSoup, cleaner: Cleaner) -> BeautifulSoup:
    """Clean ``soup`` against the allow-list and return the cleaned tree."""
    cleaned = BeautifulSoup(cleaner.clean(soup.decode(formatter="minimal")), "html.parser")
    # Checkboxes are the only form control markdown produces.
    for field in cleaned.find_all("input"):
        if (field.get("type") or "").lower() != "checkbox":
            field.decompose()
    return cleaned


def _align_cell(node: SyntaxTreeNode) -> None:
    opening = node.nester_tokens.opening
    match = _ALIGN_RE.match(opening.attrGet("style") or "")
    if match:
        opening.attrs.pop("style")
        opening.attrSet("align", match.group(1))


class MarkdownPipeline:
    def __init__(self, schema: SanitizationSchema = DEFAULT_SCHEMA) -> None:
        self.schema = schema
        self._md = build_parser()
        self._cleaner = build_cleaner(schema)

    def parse(self, text: str) -> SyntaxTreeNode:
        if not isinstance(text, str):
            raise TypeError(f"markdown must be a string, not {type(text).__name__}")
        return SyntaxTreeNode(self._md.parse(text))

    def extend(self, tree: SyntaxTreeNode) -> SyntaxTreeNode:
        for node in tree.walk():
            if node.type in ("th", "td"):
                _align_cell(node)
            elif node.type in _MATH_INLINE_TYPES:
                node.token.attrJoin("class", "math math-inline")
            elif node.type in _MATH_BLOCK_TYPES:
                node.token.attrJoin("class", "math math-display")
                label = _LABEL_RE.sub("-", (node.token.info or "").strip().lower()).strip("-")
                if node.type == "math_block_label" and label:
                    node.token.attrSet("id", f"eq-{label}")
        return tree

    def convert(self, tree: SyntaxTreeNode) -> BeautifulSoup:
        html = self._md.renderer.render(tree.to_tokens(), self._md.options, {})
        return BeautifulSoup(html, "html.parser")

    def sanitize(self, soup: BeautifulSoup) -> BeautifulSoup:
        return sanitize_tree(soup, self._cleaner)

    def serialize(self, soup: BeautifulSoup) -> str:
        return soup.decode(formatter="minimal")

    def render(self, text: str) -> str:
        """Run all five stages; any stage fault becomes one ProcessingError."""
        stage = STAGES[0]
        try:
            tree = self.parse(text)
            stage = "extend"
            tree = self.extend(tree)
            stage = "convert"
            soup = self.convert(tree)
            stage = "sanitize"
            soup = self.sanitize(soup)
            stage = "serialize"
            return self.serialize(soup)
        except ProcessingError:
            raise
        except Exception as exc:
            logger.debug("Pipeline failed in %s stage", stage, exc_info=True)
            raise ProcessingError(f"{stage} stage failed: {exc}") from exc


_local = threading.local()


def _default_pipeline() -> MarkdownPipeline:
    # One per thread: the bleach cleaner keeps parser state between calls.
    pipeline = getattr(_local, "pipeline", None)
    if pipeline is None:
        pipeline = _local.pipeline = MarkdownPipeline()
    return pipeline


def render_markdown(text: str, schema: Optional[SanitizationSchema] = None) -> str:
    """Convert markdown text to sanitized HTML in the calling thread."""
    pipeline = _default_pipeline() if schema is None else MarkdownPipeline(schema)
    return pipeline.render(text)
