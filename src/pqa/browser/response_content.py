"""Response content cleanup.

Strips interactive chrome (buttons, navigation, copy/share controls) and
cosmetic attributes from a response container's HTML so the recorded text
keeps structure without page styling.  When the container has no
structural markup the plain rendered text is used instead.
"""

from __future__ import annotations

import re

import lxml.html
from lxml import etree

_CHROME_SELECTORS = (
    "button",
    "nav",
    ".navigation",
    ".btn",
    '[role="button"]',
    ".copy-button",
    ".share-button",
    "script",
    "style",
    "svg",
)

_STRUCTURAL_TAGS = {"p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li", "pre", "table", "blockquote"}

_STRIP_ATTRS = {"class", "id", "style"}

_WS_RE = re.compile(r"\s+")


def has_structure(html: str) -> bool:
    """Return True when ``html`` contains block-level structural tags."""
    if not html.strip():
        return False
    fragment = lxml.html.fragment_fromstring(html, create_parent="div")
    return any(isinstance(el.tag, str) and el.tag in _STRUCTURAL_TAGS for el in fragment.iterdescendants())


def clean_response_html(html: str) -> str:
    """Remove chrome elements and cosmetic attributes, collapse whitespace.

    Args:
        html: Inner HTML of the response container.

    Returns:
        The cleaned inner HTML (without a wrapping element).
    """
    if not html.strip():
        return ""
    root = lxml.html.fragment_fromstring(html, create_parent="div")

    for selector in _CHROME_SELECTORS:
        for el in root.cssselect(selector):
            el.drop_tree()

    for comment in list(root.iter(etree.Comment)):
        comment.drop_tree()

    for el in root.iter():
        if not isinstance(el.tag, str):
            continue
        for attr in list(el.attrib):
            if attr in _STRIP_ATTRS or attr.startswith("data-"):
                del el.attrib[attr]

    for el in root.iter():
        if not isinstance(el.tag, str) or el.tag == "pre" or _inside_pre(el):
            continue
        if el.text:
            el.text = _WS_RE.sub(" ", el.text)
        if el.tail:
            el.tail = _WS_RE.sub(" ", el.tail)

    inner = (root.text or "") + "".join(
        lxml.html.tostring(child, encoding="unicode") for child in root
    )
    return inner.strip()


def extract_response(html: str, text: str) -> str:
    """Pick the recorded form of a response: cleaned HTML, or plain text."""
    if has_structure(html):
        cleaned = clean_response_html(html)
        if cleaned:
            return cleaned
    return text.strip()


def _inside_pre(el: lxml.html.HtmlElement) -> bool:
    parent = el.getparent()
    while parent is not None:
        if parent.tag == "pre":
            return True
        parent = parent.getparent()
    return False
