"""Newsletter formats — section and item extraction for known digest senders.

Each format is picked by a sender-domain pattern and exposes the same
``extract(body) -> Extraction``. Unknown senders use ``PassThroughFormat``.

Extraction never raises: a failing item is skipped, and a body that yields no
structure comes back as a single unlabeled section with no items.
"""

from __future__ import annotations

import html
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import html2text
from bs4 import BeautifulSoup

from tracker.ingest.urls import (
    SHORTENER_HOSTS,
    decode_quoted_printable,
    normalize_url,
    shortener_code,
)
from tracker.log import get_logger

logger = get_logger(__name__)

UNLABELED_SECTION = ""

PROMOTIONAL_TITLES: tuple[str, ...] = (
    "signup",
    "sign up",
    "subscribe",
    "follow",
    "work with us",
    "join",
    "contact",
    "about us",
    "feedback",
)

_HTML_RE = re.compile(r"<(?:html|body|div|table|p|a|br|span|td)\b", re.IGNORECASE)
_ANCHOR_RE = re.compile(
    r"<a\b[^>]*?href=[\"']?(https?://[^\"'\s>]+)[\"']?[^>]*>(.*?)</a>",
    re.IGNORECASE | re.DOTALL,
)
_CATEGORY_RE = re.compile(r"<span[^>]*style=[^>]*>([^<]+)</span>", re.IGNORECASE)
_LIKES_RES = (
    re.compile(r"=E2=87=A7\s*([\d,]+)\s*Likes"),
    re.compile(r"⇧\s*([\d,]+)\s*Likes"),
    re.compile(r"(\d[\d,]*)\s*Likes"),
)
_BARE_URL_RE = re.compile(r"https?://[^\s\"'<>()\[\]{}]+")

# html2text converter for model-facing content; links are kept inline.
_h2t = html2text.HTML2Text()
_h2t.ignore_links = False
_h2t.ignore_images = True
_h2t.body_width = 0


@dataclass
class ExtractedItem:
    """One itemised entry pulled from a newsletter."""

    title: str
    url: str = ""
    category: str = ""
    popularity: str = ""
    description: str = ""
    section: str = ""


@dataclass
class Extraction:
    items: list[ExtractedItem] = field(default_factory=list)
    sections: dict[str, str] = field(default_factory=dict)
    format_name: str = "passthrough"


# ------------------------------------------------------------------
# Text helpers
# ------------------------------------------------------------------


def looks_like_html(text: str) -> bool:
    return bool(_HTML_RE.search(text or ""))


def html_to_text(body: str) -> str:
    """Visible text of an HTML body, one text node per line, blank lines collapsed."""
    soup = BeautifulSoup(body, "html.parser")
    for tag in soup.find_all(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text("\n")
    text = re.sub(r"[ \t\xa0]+", " ", text)
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def html_to_markdown(body: str) -> str:
    """Markdown rendering of an HTML body with links kept, for model prompts."""
    soup = BeautifulSoup(body, "html.parser")
    for tag in soup.find_all(["script", "style", "head"]):
        tag.decompose()
    return _h2t.handle(str(soup)).strip()


def is_promotional(title: str) -> bool:
    lowered = title.lower()
    return any(promo in lowered for promo in PROMOTIONAL_TITLES)


def _clean_title(raw: str) -> str:
    text = BeautifulSoup(raw, "html.parser").get_text(" ", strip=True)
    return re.sub(r"\s+", " ", html.unescape(text)).strip()


def _split_sections(text: str, layout: list[tuple[str, tuple[str, ...]]]) -> dict[str, str]:
    """Cut *text* into named sections.

    *layout* lists (heading, terminators); a section runs from its heading to
    the first terminator or the end of the text. Headings match case-sensitively
    so prose such as "how to" does not open a section.
    """
    sections: dict[str, str] = {}
    for heading, terminators in layout:
        ends = "|".join(re.escape(t) for t in terminators)
        pattern = re.escape(heading) + r"([\s\S]*?)(?:" + ends + r"|$)"
        match = re.search(pattern, text)
        if match and match.group(1).strip():
            sections[heading] = match.group(1).strip()
    return sections


def _dedupe(items: list[ExtractedItem]) -> list[ExtractedItem]:
    """Drop items repeating an earlier URL, shortener code or title."""
    seen_urls: set[str] = set()
    seen_codes: set[str] = set()
    seen_titles: set[str] = set()
    kept: list[ExtractedItem] = []
    for item in items:
        code = shortener_code(item.url) if item.url else None
        title_key = item.title.lower()
        if (item.url and item.url in seen_urls) or (code and code in seen_codes):
            logger.debug("Skipping duplicate link: %s", item.url)
            continue
        if title_key in seen_titles:
            logger.debug("Skipping duplicate title: %r", item.title)
            continue
        if item.url:
            seen_urls.add(item.url)
        if code:
            seen_codes.add(code)
        seen_titles.add(title_key)
        kept.append(item)
    return kept


# ------------------------------------------------------------------
# Formats
# ------------------------------------------------------------------


class NewsletterFormat(ABC):
    """A sender-specific parsing strategy."""

    name: str = "base"
    sender_patterns: tuple[str, ...] = ()

    def matches(self, sender: str) -> bool:
        lowered = (sender or "").lower()
        return any(p in lowered for p in self.sender_patterns)

    def extract(self, body: str) -> Extraction:
        """Extract items and sections from *body*; never raises."""
        decoded = decode_quoted_printable(body or "")
        try:
            items, sections = self._extract(decoded)
        except Exception as exc:  # extraction degrades, never aborts ingestion
            logger.warning("%s extraction failed, using full text: %s", self.name, exc)
            return _unlabeled(decoded, self.name)
        if not items and not sections:
            return _unlabeled(decoded, self.name)
        return Extraction(items=items, sections=sections, format_name=self.name)

    @abstractmethod
    def _extract(self, decoded: str) -> tuple[list[ExtractedItem], dict[str, str]]:
        ...


def _unlabeled(decoded: str, name: str) -> Extraction:
    text = html_to_text(decoded) if looks_like_html(decoded) else decoded
    return Extraction(items=[], sections={UNLABELED_SECTION: text}, format_name=name)


class AlphaSignalFormat(NewsletterFormat):
    """AlphaSignal digest: linked items, shortener URLs, category spans, like counts."""

    name = "alphasignal"
    sender_patterns = ("alphasignal.ai",)
    layout = [
        ("TOP NEWS", ("TRENDING SIGNALS",)),
        ("TRENDING SIGNALS", ("TOP TUTORIALS",)),
        ("TOP TUTORIALS", ("HOW TO",)),
        ("HOW TO", ("How was today's email?",)),
    ]

    def _extract(self, decoded: str) -> tuple[list[ExtractedItem], dict[str, str]]:
        text = html_to_text(decoded) if looks_like_html(decoded) else decoded
        sections = _split_sections(text, self.layout)

        items: list[ExtractedItem] = []
        for match in _ANCHOR_RE.finditer(decoded):
            try:
                item = self._item_from_anchor(decoded, match)
            except (ValueError, IndexError) as exc:
                logger.debug("Skipping unparseable link: %s", exc)
                continue
            if item is None:
                continue
            if is_promotional(item.title):
                logger.debug("Skipping promotional item: %r", item.title)
                continue
            items.append(item)

        # Shortener links are the newsletter's own items; anything else is
        # only kept when the digest carries no shortener links at all.
        short = [i for i in items if shortener_code(i.url)]
        return _dedupe(short or items), sections

    @staticmethod
    def _item_from_anchor(decoded: str, match: re.Match[str]) -> ExtractedItem | None:
        title = _clean_title(match.group(2))
        if not title:
            return None
        url = normalize_url(html.unescape(match.group(1)))

        before = decoded[max(0, match.start() - 300) : match.start()]
        categories = _CATEGORY_RE.findall(before)
        category = html.unescape(categories[-1]).strip() if categories else ""

        after = decoded[match.end() : match.end() + 500]
        popularity = ""
        for pattern in _LIKES_RES:
            likes = pattern.search(after)
            if likes:
                popularity = likes.group(1).strip()
                break
        return ExtractedItem(title=title, url=url, category=category, popularity=popularity)


class SuperhumanFormat(NewsletterFormat):
    """Superhuman AI digest: numbered or emoji-bulleted items inside named sections."""

    name = "superhuman"
    sender_patterns = ("joinsuperhuman.ai",)
    layout = [
        ("TODAY IN AI", ("FROM THE FRONTIER", "PRESENTED BY")),
        ("FROM THE FRONTIER", ("THE AI ACADEMY", "PRESENTED BY")),
        ("AI & TECH NEWS", ("PRODUCTIVITY", "PRESENTED BY")),
        ("PRODUCTIVITY", ("PROMPT OF THE DAY", "SOCIAL SIGNALS")),
        ("SOCIAL SIGNALS", ("AI-GENERATED IMAGES",)),
    ]

    _numbered_re = re.compile(r"(?:^|\n)\s*\d+\.\s+([^\n]+)")
    _emoji_re = re.compile(
        "[✅\U0001F98E♟\U0001F91D\U0001F4CA\U0001F3AE\U0001F4B0"
        "✍\U0001F6D2\U0001F9D1\U0001F4BB\U0001F52E⚙]"
        "[\ufe0f\u200d\U0001F4BB]*"
        r"\s+([^:\n]+):"
    )

    def _extract(self, decoded: str) -> tuple[list[ExtractedItem], dict[str, str]]:
        is_html = looks_like_html(decoded)
        text = html_to_text(decoded) if is_html else decoded
        sections = _split_sections(text, self.layout)
        links = _anchor_titles(decoded) if is_html else {}

        items: list[ExtractedItem] = []
        for heading, body in sections.items():
            for title, description in self._section_items(body):
                if is_promotional(title):
                    continue
                items.append(
                    ExtractedItem(
                        title=title,
                        url=_link_for_title(title, links),
                        description=description or "No description available",
                        section=heading,
                    )
                )
        return _dedupe(items), sections

    def _section_items(self, body: str) -> list[tuple[str, str]]:
        matches = list(self._numbered_re.finditer(body))
        if not matches:
            matches = list(self._emoji_re.finditer(body))
        found: list[tuple[str, str]] = []
        for i, match in enumerate(matches):
            title = match.group(1).strip()
            if not title:
                continue
            end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
            description = re.sub(r"\s+", " ", body[match.end() : end]).strip()
            found.append((title, description))
        return found


class PassThroughFormat(NewsletterFormat):
    """Fallback for unknown senders: whole body as one unlabeled section."""

    name = "passthrough"

    def matches(self, sender: str) -> bool:
        return True

    def _extract(self, decoded: str) -> tuple[list[ExtractedItem], dict[str, str]]:
        return [], {}


def _anchor_titles(decoded: str) -> dict[str, str]:
    """Map lower-cased anchor text to its normalised href."""
    links: dict[str, str] = {}
    for match in _ANCHOR_RE.finditer(decoded):
        title = _clean_title(match.group(2)).lower()
        if title and title not in links:
            links[title] = normalize_url(html.unescape(match.group(1)))
    return links


def _link_for_title(title: str, links: dict[str, str]) -> str:
    lowered = title.lower()
    for text, url in links.items():
        if text in lowered or lowered in text:
            return url
    return ""


FORMATS: tuple[NewsletterFormat, ...] = (AlphaSignalFormat(), SuperhumanFormat())
_PASSTHROUGH = PassThroughFormat()


def format_for_sender(sender: str) -> NewsletterFormat:
    """Pick the newsletter format whose sender pattern matches *sender*."""
    for fmt in FORMATS:
        if fmt.matches(sender):
            return fmt
    return _PASSTHROUGH


def extract(body: str, sender: str) -> Extraction:
    """Extract items and sections from a decoded email *body* sent by *sender*."""
    return format_for_sender(sender).extract(body)


def extract_links(body: str) -> list[str]:
    """All http(s) links in *body*, normalised and de-duplicated.

    Shortener links come first, in document order, followed by every other link.
    """
    decoded = decode_quoted_printable(body or "")
    found: list[str] = []
    if looks_like_html(decoded):
        soup = BeautifulSoup(decoded, "html.parser")
        found.extend(a["href"] for a in soup.find_all("a", href=True))
    found.extend(_BARE_URL_RE.findall(decoded))

    links: list[str] = []
    for raw in found:
        if not raw.lower().startswith(("http://", "https://")):
            continue
        url = normalize_url(raw)
        if url not in links:
            links.append(url)

    short = [u for u in links if _host_of(u) in SHORTENER_HOSTS]
    return short + [u for u in links if u not in short]


def _host_of(url: str) -> str:
    match = re.match(r"https?://([^/?#]+)", url)
    return match.group(1).lower() if match else ""
