"""
Text canonicalization and fingerprinting for duplicate detection.

Volatile fragments (timestamps, ids, markup, tracking tokens) are removed so
that two captures of the same page content produce the same fingerprint.
"""

import hashlib
import re
import unicodedata
from typing import Optional
from urllib.parse import urlsplit

ISO_TIMESTAMP_RE = re.compile(r'\d{4}-\d{2}-\d{2}[t\s]\d{2}:\d{2}:\d{2}(?:\.\d+)?z?', re.IGNORECASE)
SLASH_DATE_RE = re.compile(r'\b\d{1,2}/\d{1,2}/\d{2,4}\b')
CLOCK_TIME_RE = re.compile(r'\b\d{1,2}:\d{2}(?::\d{2})?\s*(?:am|pm)?\b', re.IGNORECASE)
EPOCH_MILLIS_RE = re.compile(r'\b\d{13,}\b')
UUID_RE = re.compile(r'\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b', re.IGNORECASE)

ATTRIBUTE_RES = (
    re.compile(r'\sdata-[\w-]+="[^"]*"'),
    re.compile(r'\sid="[^"]*"'),
    re.compile(r'\sclass="[^"]*"'),
    re.compile(r'\sstyle="[^"]*"'),
)

HTML_COMMENT_RE = re.compile(r'<!--.*?-->', re.DOTALL)
BLOCK_TAG_RE = re.compile(r'<(script|style|noscript)\b[^>]*>.*?</\1\s*>', re.IGNORECASE | re.DOTALL)
TAG_RE = re.compile(r'<[^>]+>')

TRACKING_RES = (
    re.compile(r'\b(?:_ga|_gid|_gat|gtag|gtm|ga)[-_=:]\s*[\w.-]+', re.IGNORECASE),
    re.compile(r'\bfbq?[-_]?pixel[-_=:]?\s*[\w.-]*', re.IGNORECASE),
    re.compile(r'\btracking[-_]?(?:id|code|token|key)[-_=:]\s*[\w.-]{10,}', re.IGNORECASE),
    re.compile(r'\bsession[-_]?(?:id|token|key)?[-_=:]\s*[\w.-]{20,}', re.IGNORECASE),
    re.compile(r'[?&]?\b(?:utm_\w+|ref|source|campaign|medium|term|content|gclid|fbclid|_hsenc|_hsmi)=[^\s&]*',
               re.IGNORECASE),
    re.compile(r'\b(?:marketing|promo|affiliate)[-_]?(?:id|code|tag)[-_=:]\s*[\w.-]+', re.IGNORECASE),
)

WHITESPACE_RE = re.compile(r'\s+')
WORD_RE = re.compile(r'\w+')


def canonicalize(raw_text: str) -> str:
    """
    Produce the canonical form of captured text.

    Args:
        raw_text: Captured text, possibly containing markup

    Returns:
        Lower-cased text with volatile fragments removed and whitespace collapsed
    """
    if not raw_text:
        return ''

    text = unicodedata.normalize('NFKC', raw_text).strip().lower()

    text = ISO_TIMESTAMP_RE.sub(' ', text)
    text = SLASH_DATE_RE.sub(' ', text)
    text = CLOCK_TIME_RE.sub(' ', text)
    text = EPOCH_MILLIS_RE.sub(' ', text)
    text = UUID_RE.sub(' ', text)

    for pattern in ATTRIBUTE_RES:
        text = pattern.sub('', text)

    text = HTML_COMMENT_RE.sub(' ', text)
    text = BLOCK_TAG_RE.sub(' ', text)
    text = TAG_RE.sub(' ', text)

    for pattern in TRACKING_RES:
        text = pattern.sub(' ', text)

    return WHITESPACE_RE.sub(' ', text).strip()


def fingerprint(canonical_text: str) -> str:
    """SHA-256 lowercase hex digest of canonical text."""
    return hashlib.sha256(canonical_text.encode('utf-8')).hexdigest()


def normalize_url(url: Optional[str]) -> str:
    """
    Reduce a URL to scheme, host and path, lower-cased.

    Query strings and fragments are dropped; unparseable input is lower-cased
    with everything from the first ``?`` or ``#`` removed.
    """
    if not url:
        return ''
    try:
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.netloc:
            raise ValueError(f'Not an absolute URL: {url}')
        return f'{parts.scheme}://{parts.hostname or ""}{parts.path}'.lower()
    except ValueError:
        return re.split(r'[?#]', url.strip().lower(), maxsplit=1)[0]


def url_host(url: Optional[str]) -> str:
    if not url:
        return ''
    try:
        return (urlsplit(url.strip()).hostname or '').lower()
    except ValueError:
        return ''


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two texts' lower-cased word sets."""
    words_a = set(WORD_RE.findall((a or '').lower()))
    words_b = set(WORD_RE.findall((b or '').lower()))
    if not words_a and not words_b:
        return 1.0
    union = words_a | words_b
    return len(words_a & words_b) / len(union)
