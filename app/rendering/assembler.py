"""Assemble the marketing strategy document and the email page that carries it."""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from app.models.analysis import AnalysisResult
from app.models.user import UserRecord
from app.rendering.sections import BOLD_MARKER, NEWLINE_MARKER, SECTIONS, Section

logger = logging.getLogger("app.rendering.assembler")

STRATEGY_TITLE = "<h2>Marketing Strategy & Content Ideas</h2>"
EMPTY_STRATEGY = STRATEGY_TITLE + "<p>No detailed strategy information available.</p>"
RAW_CONTENT_KEY = "rawContent"
PLACEHOLDER_PHRASES = ("no information provided", "not specified", "no specific")

_TRAILER_RE = re.compile(r"This strategy balances.*", re.IGNORECASE | re.DOTALL)
_BREAK_RUN_RE = re.compile(r"(?:<br>\s*){2,}")
_EMPTY_PARAGRAPH = "<p><br></p>"

EMAIL_TEMPLATE = """
<html>
  <head>
    <style>
      body {{ font-family: sans-serif; line-height: 1.6; color: #333; }}
      h1 {{ color: #1a1a1a; }}
      h2 {{ color: #2c2c2c; border-bottom: 1px solid #eee; padding-bottom: 5px; margin-top: 30px; }}
      h3 {{ color: #444; margin-top: 25px; }}
      h4 {{ color: #555; margin-top: 20px; }}
      ul {{ margin-left: 20px; padding-left: 0; }}
      li {{ margin-bottom: 8px; }}
      p {{ margin-bottom: 12px; }}
      .container {{ max-width: 700px; margin: 20px auto; padding: 20px; border: 1px solid #ddd; border-radius: 5px; }}
      .footer {{ margin-top: 30px; font-size: 0.9em; color: #777; }}
    </style>
  </head>
  <body>
    <div class="container">
      <h1>Your TikTok Analysis Results</h1>
      <p>Hello {name},</p>
      <p>We've completed your scheduled TikTok trend analysis. Here's what we found:</p>

      <h2>Analysis Stats</h2>
      <ul>
        <li>Search Queries Analyzed: {queries_count}</li>
        <li>TikTok Videos Analyzed: {videos_count}</li>
      </ul>

      {strategy_html}

      <p class="footer">Log in to your dashboard to see the full analysis and more detailed recommendations.</p>
      <p class="footer">Best regards,<br>The Complete Lazy Trend Team</p>
    </div>
  </body>
</html>
"""


def is_placeholder(fragment: str) -> bool:
    """True when a rendered section only carries placeholder text."""
    lowered = fragment.lower()
    return any(phrase in lowered for phrase in PLACEHOLDER_PHRASES)


def resolve_section_content(document: Mapping[str, Any], section: Section) -> Any:
    content = document.get(section.key)
    if not content and section.key == "observations":
        content = document.get(RAW_CONTENT_KEY)
    return content


def _render_section(section: Section, content: Any) -> str | None:
    fragment = section.renderer(content)
    if section.is_empty(fragment) or is_placeholder(fragment):
        logger.debug("strategy.section.suppressed", extra={"section": section.key})
        return None
    return fragment


def extract_trailer(posting_frequency: Any) -> str | None:
    """Return the closing "This strategy balances ..." sentence, flattened to one line."""
    if not isinstance(posting_frequency, str):
        return None
    match = _TRAILER_RE.search(posting_frequency)
    if not match:
        return None
    sentence = match.group(0).replace(BOLD_MARKER, "").replace(NEWLINE_MARKER, " ")
    sentence = sentence.replace("\r\n", " ").replace("\n", " ").strip()
    return sentence or None


def cleanup_line_breaks(fragment: str) -> str:
    """Single cleanup pass over the assembled HTML.

    Runs of line breaks are collapsed once and empty paragraphs removed after
    that, so removing an empty paragraph can leave two breaks adjacent again.
    """
    cleaned = fragment.replace(NEWLINE_MARKER, "<br>")
    cleaned = _BREAK_RUN_RE.sub("<br>", cleaned)
    return cleaned.replace(_EMPTY_PARAGRAPH, "")


def assemble_strategy_html(
    document: Mapping[str, Any] | None, *, sections: Sequence[Section] = SECTIONS
) -> str:
    """Render the strategy document into the HTML block placed under its title."""
    if not document:
        return EMPTY_STRATEGY

    parts = [STRATEGY_TITLE]
    rendered = 0
    for section in sections:
        content = resolve_section_content(document, section)
        if not content:
            continue
        fragment = _render_section(section, content)
        if fragment is None:
            continue
        parts.append(f"<h3>{html.escape(section.title, quote=False)}</h3>")
        parts.append(fragment)
        rendered += 1

    if not rendered:
        logger.info("strategy.empty", extra={"keys": [str(key) for key in document]})
        return EMPTY_STRATEGY

    trailer = extract_trailer(document.get("postingFrequency"))
    if trailer:
        parts.append(f"<p>{html.escape(trailer, quote=False)}</p>")
    return cleanup_line_breaks("".join(parts))


def render_email_document(user: UserRecord, result: AnalysisResult) -> str:
    """Wrap the strategy block in the full email page with the run statistics."""
    return EMAIL_TEMPLATE.format(
        name=html.escape(user.full_name or "there"),
        queries_count=len(result.search_queries),
        videos_count=result.videos_count,
        strategy_html=assemble_strategy_html(result.marketing_strategy),
    )
