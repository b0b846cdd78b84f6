#!/usr/bin/env python3
"""Prints a small RSS document; any script in this directory may be used as a feed."""

from datetime import datetime, timezone
from email.utils import format_datetime

now = format_datetime(datetime.now(timezone.utc))

print(f"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>Example script feed</title>
    <link>https://example.com/</link>
    <description>Generated by scripts/example_feed.py</description>
    <item>
      <title>Hello from a script</title>
      <link>https://example.com/hello</link>
      <author>Script Author</author>
      <pubDate>{now}</pubDate>
      <description>Scripts print RSS or Atom on stdout.</description>
    </item>
  </channel>
</rss>""")
