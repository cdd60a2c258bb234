"""
Rich text facets for feed posts.

Facet ranges are UTF-8 byte offsets into the post text, not character offsets.
Every range here is computed by encoding the text before the match, so
multi-byte characters (emoji, accented letters) ahead of a link shift the range
by their encoded length.
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from dropanchor.model.place import Place
from dropanchor.model.records import (
    ByteSlice,
    Facet,
    FacetFeature,
    LinkFeature,
    MentionFeature,
    TagFeature,
)

CHECKIN_PREFIX = "at "
CHECKIN_TAGS = ("checkin", "dropanchor")

URL_PATTERN = re.compile(r"(?<![\w@/])((?:https?://|www\.)[^\s<>\"']+)", re.IGNORECASE)
MENTION_PATTERN = re.compile(
    r"(?<![\w.@])@([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(?:\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*)"
)
HASHTAG_PATTERN = re.compile(r"(?<![\w#&])#([a-zA-Z][a-zA-Z0-9_]*)")

INVALID_TLDS = frozenset(("invalid", "localhost", "local", "example"))
TRAILING_PUNCTUATION = ".,;:!?)]}"


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def byte_slice(text: str, start: int, end: int) -> ByteSlice:
    """Convert the character span ``text[start:end]`` to a UTF-8 byte range."""
    byte_start = utf8_len(text[:start])
    return ByteSlice(byte_start=byte_start, byte_end=byte_start + utf8_len(text[start:end]))


def facet_for(
    text: str, needle: str, feature: FacetFeature, start: int = 0
) -> Optional[Facet]:
    """Facet over the first occurrence of ``needle`` in ``text`` at or after ``start``."""
    index = text.find(needle, start)
    if index < 0:
        return None
    return Facet(index=byte_slice(text, index, index + len(needle)), features=[feature])


def is_valid_domain(domain: str) -> bool:
    """Whether ``domain`` looks like a real handle: two or more labels, alphabetic TLD."""
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    tld = labels[-1]
    if len(tld) < 2 or not tld.isalpha():
        return False
    return tld.lower() not in INVALID_TLDS


def detect_links(text: str) -> List[Tuple[int, int, str]]:
    """Character spans and URIs of links in ``text``. ``www.`` links gain https://."""
    links = []
    for match in URL_PATTERN.finditer(text):
        url = match.group(1).rstrip(TRAILING_PUNCTUATION)
        if not url:
            continue
        start = match.start(1)
        uri = f"https://{url}" if url.lower().startswith("www.") else url
        links.append((start, start + len(url), uri))
    return links


def detect_mentions(text: str) -> List[Tuple[int, int, str]]:
    """Character spans (including ``@``) and handles of plausible mentions."""
    mentions = []
    for match in MENTION_PATTERN.finditer(text):
        handle = match.group(1)
        if not is_valid_domain(handle):
            continue
        mentions.append((match.start(), match.end(), handle.lower()))
    return mentions


def detect_hashtags(text: str) -> List[Tuple[int, int, str]]:
    return [(m.start(), m.end(), m.group(1)) for m in HASHTAG_PATTERN.finditer(text)]


def _overlaps(span: Tuple[int, int], taken: Iterable[Tuple[int, int]]) -> bool:
    return any(span[0] < end and start < span[1] for start, end in taken)


def detect_facets(
    text: str, mention_dids: Optional[Mapping[str, str]] = None
) -> List[Facet]:
    """
    Link, mention and hashtag facets found in ``text``, ordered by position.

    Mentions become facets only when ``mention_dids`` maps the handle to a DID.
    Mentions and hashtags inside a detected link are ignored.
    """
    mention_dids = mention_dids or {}
    spans: List[Tuple[int, int, FacetFeature]] = []

    for start, end, uri in detect_links(text):
        spans.append((start, end, LinkFeature(uri=uri)))

    taken = [(start, end) for start, end, _ in spans]

    for start, end, handle in detect_mentions(text):
        did = mention_dids.get(handle)
        if did is None or _overlaps((start, end), taken):
            continue
        spans.append((start, end, MentionFeature(did=did)))

    for start, end, tag in detect_hashtags(text):
        if _overlaps((start, end), taken):
            continue
        spans.append((start, end, TagFeature(tag=tag)))

    spans.sort(key=lambda span: span[0])
    return [
        Facet(index=byte_slice(text, start, end), features=[feature])
        for start, end, feature in spans
    ]


def build_checkin_post(
    place: Place,
    message: Optional[str],
    default_message: str,
    place_url: str,
    mention_dids: Optional[Mapping[str, str]] = None,
) -> Tuple[str, List[Facet]]:
    """
    Text and facets of the feed post announcing a check-in.

    The text is the user's message (or ``default_message`` when blank), a blank
    line, then ``at <place name> #checkin #dropanchor``. The place name links to
    ``place_url``.
    """
    body = message.strip() if message and message.strip() else default_message
    tagline_start = len(body) + 2
    tags = " ".join(f"#{tag}" for tag in CHECKIN_TAGS)
    text = f"{body}\n\n{CHECKIN_PREFIX}{place.name} {tags}"

    facets = detect_facets(body, mention_dids)

    name_start = tagline_start + len(CHECKIN_PREFIX)
    facets.append(
        Facet(
            index=byte_slice(text, name_start, name_start + len(place.name)),
            features=[LinkFeature(uri=place_url)],
        )
    )

    tag_start = name_start + len(place.name) + 1
    for tag in CHECKIN_TAGS:
        tag_end = tag_start + len(tag) + 1
        facets.append(
            Facet(
                index=byte_slice(text, tag_start, tag_end),
                features=[TagFeature(tag=tag)],
            )
        )
        tag_start = tag_end + 1

    return text, facets


def mention_handles(text: str) -> Sequence[str]:
    """Distinct handles mentioned in ``text``, in order of appearance."""
    seen: Dict[str, None] = {}
    for _, _, handle in detect_mentions(text):
        seen.setdefault(handle, None)
    return list(seen)
