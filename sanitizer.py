#!/usr/bin/env python3
"""Strip link elements with non-web href schemes from raw feed XML.

Some feeds ship `<atom:link href="file://...">` or `javascript:` links that
upset the parser or leak local paths into article links. Both the prefixed
and the bare form are removed before parsing; http(s) links are untouched.
"""

import re

_UNSAFE_SCHEMES = r"(?:file://|javascript:|data:|ftp://)"

_ATOM_LINK_RE = re.compile(
    r"""<atom:link\s+[^>]*href=["']""" + _UNSAFE_SCHEMES + r"""[^"']*["'][^>]*/?>""",
    re.IGNORECASE,
)
_LINK_RE = re.compile(
    r"""<link\s+[^>]*href=["']""" + _UNSAFE_SCHEMES + r"""[^"']*["'][^>]*/?>""",
    re.IGNORECASE,
)


def sanitize_feed_xml(xml: str) -> str:
    """Return `xml` without atom:link/link elements pointing at unsafe schemes.

    Idempotent: the output contains no matches, so a second pass is a no-op.
    """
    if not xml:
        return xml
    xml = _ATOM_LINK_RE.sub("", xml)
    return _LINK_RE.sub("", xml)
