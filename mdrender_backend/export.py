"""Standalone HTML and PDF export of rendered markdown.

The input is already-sanitized HTML from the pipeline; this module only adds
document scaffolding (head, container, CSS) and heading anchors, then prints
to PDF in headless Chromium when asked.
"""
from __future__ import annotations

import html as _html
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.element import Tag
from playwright.async_api import async_playwright


CONTAINER_TAGS = {"div", "article", "main", "section"}
PAGE_FORMATS = {"a4": "A4", "letter": "Letter", "legal": "Legal"}

BASE_CSS = """
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; margin: 0; }
.markdown-content { box-sizing: border-box; max-width: 980px; margin: 0 auto; padding: 45px; }
.markdown-content h1, .markdown-content h2, .markdown-content h3,
.markdown-content h4, .markdown-content h5, .markdown-content h6 { margin: 1.5em 0 0.5em 0; font-weight: 600; line-height: 1.25; }
.markdown-content p { margin: 1em 0; }
.markdown-content ul, .markdown-content ol { margin: 1em 0; padding-left: 2em; }
.markdown-content li.task-list-item { list-style: none; }
.markdown-content a { color: #0066cc; }
.markdown-content code { background: #f5f5f5; padding: 0.125em 0.25em; border-radius: 3px; font-family: monospace; font-size: 0.9em; }
.markdown-content pre { background: #f5f5f5; padding: 1em; border-radius: 5px; overflow-x: auto; }
.markdown-content pre code { background: transparent; padding: 0; }
.markdown-content table { border-collapse: collapse; width: 100%; margin: 1em 0; }
.markdown-content th, .markdown-content td { border: 1px solid #ddd; padding: 0.5em; text-align: left; }
.markdown-content th { background: #f5f5f5; }
.markdown-content blockquote { border-left: 4px solid #ddd; margin: 1em 0; padding: 0 1em; color: #666; }
.markdown-content img { max-width: 100%; height: auto; }
.markdown-content .math-display { text-align: center; margin: 1em 0; font-family: serif; }
@media print {
  h1, h2, h3, h4, h5, h6 { break-after: avoid; break-inside: avoid; }
  pre, blockquote, table, img { break-inside: avoid; }
  pre { white-space: pre-wrap; }
}
"""


@dataclass(frozen=True)
class HtmlExport:
    html: str
    anchors: int


def slugify(text: str) -> str:
    # Prefer the visible text, not embedded markup.
    t = _html.unescape(str(text or ""))
    t = re.sub(r"^#+\s*", "", t.strip())
    t = re.sub(r"[\s\-_.]+", "-", t)
    t = re.sub(r"[^a-z0-9\-]", "", t.lower())
    return t.strip("-")


def add_heading_ids(soup: BeautifulSoup) -> int:
    """Give every heading a stable anchor.

    Strict scheme: H1 uses the plain slug, H2+ uses ``hN-slug``, so
    ``href="#introduction"`` only ever matches ``# Introduction``. Repeated
    anchors get ``-2``, ``-3``... suffixes. Returns the number of ids written.
    """
    seen: dict[str, int] = {}
    written = 0
    for heading in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        if not isinstance(heading, Tag):
            continue
        base = slugify(heading.get_text())
        if not base:
            continue
        level = heading.name[1]
        anchor = base if level == "1" else f"h{level}-{base}"
        count = seen.get(anchor, 0) + 1
        seen[anchor] = count
        if count > 1:
            anchor = f"{anchor}-{count}"
        heading["id"] = anchor
        written += 1
    return written


def build_html_document(
    body_html: str,
    *,
    title: str = "Document",
    container: str = "article",
    container_class: str = "markdown-content",
    include_css: bool = True,
) -> HtmlExport:
    """Wrap rendered HTML in a complete, self-contained HTML document."""
    if container not in CONTAINER_TAGS:
        raise ValueError(f"Unsupported container: {container}")

    doc = BeautifulSoup(
        '<!DOCTYPE html><html lang="en"><head><meta charset="utf-8"/>'
        '<meta name="viewport" content="width=device-width, initial-scale=1"/>'
        "<title></title></head><body></body></html>",
        "html.parser",
    )
    doc.title.string = title or "Document"
    if include_css:
        style = doc.new_tag("style")
        style.string = BASE_CSS
        doc.head.append(style)

    body = BeautifulSoup(body_html or "", "html.parser")
    anchors = add_heading_ids(body)

    wrapper = doc.new_tag(container)
    classes = [c for c in str(container_class or "").split() if c]
    if classes:
        wrapper["class"] = classes
    # Move parsed nodes into the wrapper (preserves nested markup).
    for child in list(body.contents):
        wrapper.append(child.extract())
    doc.body.append(wrapper)

    return HtmlExport(html=str(doc), anchors=anchors)


def export_filename(title: str, extension: str) -> str:
    stem = re.sub(r"\s+", "-", (title or "").strip().lower())
    stem = re.sub(r"[^a-z0-9\-_.]", "", stem).strip("-.") or "document"
    return f"{stem}.{extension}"


async def print_pdf(document_html: str, *, page_format: str = "a4", landscape: bool = False) -> bytes:
    """Print an HTML document to a selectable-text PDF in headless Chromium."""
    fmt = PAGE_FORMATS.get((page_format or "").lower())
    if fmt is None:
        raise ValueError(f"Unsupported page format: {page_format}")

    async with async_playwright() as p:
        browser = await p.chromium.launch()
        try:
            page = await browser.new_page()
            await page.set_content(document_html, wait_until="networkidle")
            pdf_bytes = await page.pdf(
                format=fmt,
                landscape=landscape,
                print_background=True,
                margin={"top": "12mm", "right": "12mm", "bottom": "12mm", "left": "12mm"},
            )
        finally:
            await browser.close()
    return pdf_bytes
