"""Tolerant renderers that turn loosely formatted strategy text into HTML fragments.

The upstream generator emits markdown-ish text whose line breaks usually arrive
as the two-character sequence backslash + ``n`` rather than a real newline.
Both forms are treated as the same line-break marker here. Every renderer is a
pure function that accepts anything and always returns an HTML string; input
that cannot be used degrades to a fixed placeholder paragraph.
"""

from __future__ import annotations

import html
import json
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import partial

NEWLINE_MARKER = "\\n"
BULLET_DELIMITER = NEWLINE_MARKER + "- "
BULLET_PREFIX = "- "
BOLD_MARKER = "**"
RULE_MARKER = "---"

HASHTAG_LABELS = ("Primary (Niche):", "Secondary (Trending/Regional):", "Broad Appeal:")

NO_SCRIPT = "<p>No sample script provided.</p>"
NO_THEMES = "<p>No specific themes provided.</p>"
NO_HASHTAGS = "<p>No hashtag strategy provided.</p>"
NOT_SPECIFIED = "<p>Not specified.</p>"
NO_HASHTAGS_LISTED = "<p>No specific hashtags listed.</p>"

_ORDINAL_HEADER_RE = re.compile(r"^\s*\d\.(?!\d)\s*(?:[\w\s()]+:)?", re.IGNORECASE)
_EDGE_BREAKS_RE = re.compile(r"^(?:\s|\\n)+|(?:\s|\\n)+$")
_VISUAL_CUES_RE = re.compile(r"Visual Cues:(.*?)(?=Voiceover/Script:|\Z)", re.IGNORECASE | re.DOTALL)
_VOICEOVER_RE = re.compile(r"Voiceover/Script:(.*?)(?=Visual Cues:|\Z)", re.IGNORECASE | re.DOTALL)
_THEME_PREFIX_RE = re.compile(r"^\s*(?:\d+\.(?:\s+|$))?(?:[-*]\s*)?")
_DEGENERATE_THEME_RE = re.compile(r"^(?:[-*]+|\d+\.)?$")

Renderer = Callable[[object], str]


def _normalize_breaks(text: str) -> str:
    return text.replace("\r\n", NEWLINE_MARKER).replace("\n", NEWLINE_MARKER)


def _strip_bold(text: str) -> str:
    return text.replace(BOLD_MARKER, "")


def _trim(text: str) -> str:
    """Strip whitespace and line-break markers from both ends."""
    return _EDGE_BREAKS_RE.sub("", text)


def _escape(text: str) -> str:
    return html.escape(text, quote=False)


def _with_breaks(text: str) -> str:
    return _escape(text).replace(NEWLINE_MARKER, "<br>")


def clean_item(text: str) -> str:
    """Drop a leading bullet dash and flatten inner line breaks to spaces."""
    item = text.strip()
    if item.startswith(BULLET_PREFIX):
        item = item[len(BULLET_PREFIX) :]
    return item.replace(NEWLINE_MARKER, " ").strip()


def split_items(text: str) -> list[str]:
    """Split on the bullet delimiter, keeping only non-empty cleaned items."""
    items = (clean_item(part) for part in text.split(BULLET_DELIMITER))
    return [item for item in items if item]


def bullet_list(items: Sequence[str]) -> str:
    return "<ul>" + "".join(f"<li>{_escape(item)}</li>" for item in items) + "</ul>"


def list_placeholder(label: str) -> str:
    return f"<p>No {label.lower()} provided.</p>"


def render_list(content: object, label: str) -> str:
    """Render a bulleted section, or a single paragraph when the text is not itemized."""
    placeholder = list_placeholder(label)
    if not isinstance(content, str) or not content.strip():
        return placeholder
    cleaned = _strip_bold(_normalize_breaks(content))
    cleaned = _ORDINAL_HEADER_RE.sub("", cleaned, count=1)
    cleaned = _trim(cleaned.replace(RULE_MARKER, ""))
    if not cleaned:
        return placeholder
    items = split_items(cleaned)
    if len(items) <= 1:
        return f"<p>{_with_breaks(cleaned)}</p>"
    return bullet_list(items)


def render_script(content: object) -> str:
    """Render the two-part script format: visual cues as a list, voiceover as prose."""
    if not isinstance(content, str) or not content.strip():
        return NO_SCRIPT
    cleaned = _strip_bold(_normalize_breaks(content))

    parts = ["<h4>Visual Cues:</h4>"]
    visual = _VISUAL_CUES_RE.search(cleaned)
    cues = split_items(visual.group(1)) if visual else []
    parts.append(bullet_list(cues) if cues else NOT_SPECIFIED)

    parts.append("<h4>Voiceover/Script:</h4>")
    voiceover = _VOICEOVER_RE.search(cleaned)
    spoken = _trim(voiceover.group(1)).replace('*"', '"') if voiceover else ""
    parts.append(f"<p>{_with_breaks(spoken)}</p>" if spoken else NOT_SPECIFIED)
    return "".join(parts)


def _theme_candidates(content: object) -> list[object]:
    if isinstance(content, (list, tuple)):
        return list(content)
    if not isinstance(content, str):
        return []
    try:
        parsed = json.loads(content)
    except (ValueError, RecursionError):
        parsed = None
    if isinstance(parsed, list):
        return parsed
    return _normalize_breaks(content).split(BULLET_DELIMITER)


def _clean_theme(candidate: object) -> str | None:
    if not isinstance(candidate, str):
        return None
    theme = _trim(_strip_bold(_normalize_breaks(candidate)))
    theme = _THEME_PREFIX_RE.sub("", theme, count=1)
    theme = theme.replace(NEWLINE_MARKER, " ").strip()
    if _DEGENERATE_THEME_RE.match(theme):
        return None
    return theme


def render_themes(content: object) -> str:
    """Render content themes from a list, a JSON array string, or bulleted text."""
    themes = [theme for theme in map(_clean_theme, _theme_candidates(content)) if theme]
    if not themes:
        return NO_THEMES
    return bullet_list(themes)


@dataclass
class HashtagStateMachine:
    """Walks hashtag lines, grouping bullets under the three fixed bucket labels.

    ``current_label`` is ``None`` before the first label is seen and the active
    label afterwards. Moving to a new label, or finishing, flushes the open
    bucket into ``fragments``.
    """

    labels: Sequence[str] = HASHTAG_LABELS
    current_label: str | None = None
    pending: list[str] = field(default_factory=list)
    fragments: list[str] = field(default_factory=list)

    def match_label(self, line: str) -> str | None:
        folded = line.casefold()
        for label in self.labels:
            if folded.startswith(label.casefold()):
                return label
        return None

    def feed(self, line: str) -> None:
        line = line.strip()
        label = self.match_label(line)
        if label is not None:
            self.flush()
            self.current_label = label
            trailing = line[len(label) :].strip()
            if trailing.startswith(BULLET_PREFIX):
                self._append(trailing)
            return
        if self.current_label is not None and line.startswith(BULLET_PREFIX):
            self._append(line)

    def flush(self) -> None:
        if self.current_label is None:
            return
        body = bullet_list(self.pending) if self.pending else NO_HASHTAGS_LISTED
        self.fragments.append(f"<h4>{_escape(self.current_label)}</h4>{body}")
        self.pending = []

    def finish(self) -> str:
        self.flush()
        self.current_label = None
        return "".join(self.fragments) if self.fragments else NO_HASHTAGS

    def _append(self, line: str) -> None:
        item = clean_item(line)
        if item:
            self.pending.append(item)


def render_hashtags(content: object) -> str:
    """Render the Primary / Secondary / Broad Appeal hashtag taxonomy."""
    if not isinstance(content, str) or not content.strip():
        return NO_HASHTAGS
    machine = HashtagStateMachine()
    for line in _strip_bold(_normalize_breaks(content)).split(NEWLINE_MARKER):
        machine.feed(line)
    return machine.finish()


@dataclass(frozen=True)
class Section:
    """One of the fixed named slots of the strategy document."""

    title: str
    key: str
    renderer: Renderer
    placeholder: str

    def is_empty(self, fragment: str) -> bool:
        """True when the renderer fell back to its own no-content paragraph."""
        return not fragment or fragment == self.placeholder


def _list_section(title: str, key: str) -> Section:
    return Section(title, key, partial(render_list, label=title), list_placeholder(title))


SECTIONS: tuple[Section, ...] = (
    _list_section("Observations", "observations"),
    _list_section("Key Trend Takeaways", "keyTakeaways"),
    Section("Sample TikTok Script", "sampleScript", render_script, NO_SCRIPT),
    _list_section("Technical Specifications", "technicalSpecifications"),
    Section("General Content Themes", "contentThemes", render_themes, NO_THEMES),
    Section("Hashtag Strategy", "hashtagStrategy", render_hashtags, NO_HASHTAGS),
    _list_section("Posting Frequency", "postingFrequency"),
)

SECTION_RENDERERS: dict[str, Renderer] = {section.key: section.renderer for section in SECTIONS}
