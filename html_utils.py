# -*- coding: utf-8 -*-
"""
HTML helpers for notification bodies: parsing, label/value table lookup, text rendering.
"""

import html2text
import lxml.etree
import lxml.html

# Innermost cell containing the label; layout tables wrap the whole body in
# outer cells that also "contain" every label.
_LABEL_CELL_XPATH = lxml.etree.XPath(
    "//*[self::td or self::th]"
    "[contains(normalize-space(.), $label)]"
    "[not(.//*[self::td or self::th][contains(normalize-space(.), $label)])]"
)


def parse_html(content):
    """
    Parse markup into an lxml tree.

    Args:
        content: HTML (or plain text) string

    Returns:
        lxml element, or None for empty content
    """
    if not content or not content.strip():
        return None
    try:
        return lxml.html.fromstring(content)
    except (lxml.etree.ParserError, ValueError):
        return None


def find_labeled_value(tree, label):
    """
    Find the value cell next to a label cell, e.g. <td>Amounts</td><td>1,234</td>.

    Args:
        tree: lxml tree from parse_html (may be None)
        label: Label text the cell must contain

    Returns:
        Stripped text of the following sibling cell, or None
    """
    if tree is None:
        return None

    for cell in _LABEL_CELL_XPATH(tree, label=label):
        sibling = cell.getnext()
        while sibling is not None and sibling.tag not in ("td", "th"):
            sibling = sibling.getnext()
        if sibling is None:
            continue
        value = sibling.text_content().strip()
        if value:
            return value

    return None


def make_html2text_converter():
    """Create html2text converter tuned for label matching: no wrapping, no emphasis marks."""
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.single_line_break = True
    converter.ignore_emphasis = True
    converter.ignore_images = True
    converter.ignore_tables = False
    converter.bypass_tables = False
    converter.ignore_links = False
    converter.inline_links = True
    converter.wrap_links = False
    converter.protect_links = False
    converter.unicode_snob = True
    return converter


def html_to_text(html):
    """Render HTML to plain text, empty string for empty input."""
    if not html:
        return ""
    return make_html2text_converter().handle(html)
