"""
Speakable-text normalization.

A fixed, ordered pipeline of regex rewrites applied to every outbound chunk
before it reaches the synthesizer:

1. line breaks -> sentence breaks
2. numeric dates -> "<day> <month> <year>" phrases
3. currency amounts -> "<amount> <major> [and <cents> <minor>]"
4. email addresses -> "<local> at <domain spelled out>"
5. URLs -> separators spelled out, scheme dropped
6. whitespace collapse + trim

Every rule only matches raw (digit/symbol) forms and emits words, so running
the pipeline on its own output is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Dict, Literal, Tuple

VocabularyCode = Literal["lt", "en"]


@dataclass(frozen=True)
class Vocabulary:
    """Words used when verbalizing symbols for one language."""

    months: Tuple[str, ...]
    date_template: str
    currencies: Dict[str, Tuple[str, str]]  # symbol -> (major, minor)
    conjunction: str
    at: str
    dot: str
    dash: str
    underscore: str
    slash: str


_VOCABULARIES: Dict[VocabularyCode, Vocabulary] = {
    "lt": Vocabulary(
        # Genitive forms: "5 kovo" reads as "the 5th of March".
        months=(
            "sausio", "vasario", "kovo", "balandžio", "gegužės", "birželio",
            "liepos", "rugpjūčio", "rugsėjo", "spalio", "lapkričio", "gruodžio",
        ),
        date_template="{day} {month} {year} metų",
        currencies={
            "€": ("eurų", "centų"),
            "$": ("dolerių", "centų"),
            "£": ("svarų", "pensų"),
        },
        conjunction="ir",
        at="eta",
        dot="taškas",
        dash="brūkšnelis",
        underscore="apatinis brūkšnys",
        slash="pasvirasis brūkšnys",
    ),
    "en": Vocabulary(
        months=(
            "January", "February", "March", "April", "May", "June",
            "July", "August", "September", "October", "November", "December",
        ),
        date_template="{day} of {month} {year}",
        currencies={
            "€": ("euros", "cents"),
            "$": ("dollars", "cents"),
            "£": ("pounds", "pence"),
        },
        conjunction="and",
        at="at",
        dot="dot",
        dash="dash",
        underscore="underscore",
        slash="slash",
    ),
}

_CURRENCY_CODES = {"EUR": "€", "USD": "$", "GBP": "£"}

_LINE_BREAK_RE = re.compile(r"[ \t]*(?:[\r\n]+[ \t]*)+")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_EU_DATE_RE = re.compile(r"\b(\d{1,2})([./-])(\d{1,2})\2(\d{4})\b")
_AMOUNT = r"(\d+)(?:[.,](\d{1,2}))?(?!\d)(?![.,]\d)"
_CURRENCY_PREFIX_RE = re.compile(r"([€$£])\s?" + _AMOUNT)
_CURRENCY_SUFFIX_RE = re.compile(r"(?<![\d.,])" + _AMOUNT + r"\s?(?:([€$£])|(EUR|USD|GBP)\b)")
_EMAIL_RE = re.compile(
    r"\b([A-Za-z0-9_.%+-]+)@([A-Za-z0-9](?:[A-Za-z0-9_-]*[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9_-]*[A-Za-z0-9])?)*\.[A-Za-z]{2,})\b"
)

_KNOWN_TLDS = (
    "com", "net", "org", "info", "biz", "io", "ai", "app", "dev", "co",
    "lt", "lv", "ee", "eu", "uk", "de", "fr", "pl", "us", "me",
)
_URL_RE = re.compile(
    r"(?<![@\w.])"
    r"(?:"
    r"https?://[^\s<>\"']+"
    r"|www\.[^\s<>\"']+"
    r"|[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.(?:" + "|".join(_KNOWN_TLDS) + r")\b(?:/[^\s<>\"']*)?"
    r")",
    re.IGNORECASE,
)
_URL_TRAILING_PUNCT = ".,!?;:)]}'\""
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_URL_NOISE_RE = re.compile(r"[?=&#%:+~]")
_WHITESPACE_RE = re.compile(r"\s+")

_TERMINATORS = ".!?;:"


def get_vocabulary(language: str) -> Vocabulary:
    """Pick the vocabulary for a language tag ("lt-LT", "en-US", ...)."""
    lang = (language or "").strip().lower()
    if lang.startswith("en"):
        return _VOCABULARIES["en"]
    return _VOCABULARIES["lt"]


def _line_breaks_to_sentences(text: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        before = text[: match.start()].rstrip()
        if not before or before[-1] in _TERMINATORS:
            return " "
        return ". "

    return _LINE_BREAK_RE.sub(_replace, text)


def _format_date(vocab: Vocabulary, day: str, month: str, year: str) -> str | None:
    d, m = int(day), int(month)
    if not (1 <= d <= 31 and 1 <= m <= 12):
        return None
    return vocab.date_template.format(day=d, month=vocab.months[m - 1], year=int(year))


def _rewrite_dates(text: str, vocab: Vocabulary) -> str:
    def _iso(match: re.Match[str]) -> str:
        year, month, day = match.groups()
        return _format_date(vocab, day, month, year) or match.group(0)

    def _european(match: re.Match[str]) -> str:
        day, _, month, year = match.groups()
        return _format_date(vocab, day, month, year) or match.group(0)

    text = _ISO_DATE_RE.sub(_iso, text)
    return _EU_DATE_RE.sub(_european, text)


def _format_amount(vocab: Vocabulary, symbol: str, whole: str, cents: str | None) -> str:
    major, minor = vocab.currencies[symbol]
    phrase = f"{int(whole)} {major}"
    if cents:
        # "12.5" means fifty cents, not five.
        value = int(cents.ljust(2, "0"))
        if value:
            phrase += f" {vocab.conjunction} {value} {minor}"
    return phrase


def _rewrite_currency(text: str, vocab: Vocabulary) -> str:
    def _prefix(match: re.Match[str]) -> str:
        symbol, whole, cents = match.groups()
        return _format_amount(vocab, symbol, whole, cents)

    def _suffix(match: re.Match[str]) -> str:
        whole, cents, symbol, code = match.groups()
        return _format_amount(vocab, symbol or _CURRENCY_CODES[code], whole, cents)

    text = _CURRENCY_PREFIX_RE.sub(_prefix, text)
    return _CURRENCY_SUFFIX_RE.sub(_suffix, text)


def _spell_separators(value: str, vocab: Vocabulary) -> str:
    spoken = (
        value.replace(".", f" {vocab.dot} ")
        .replace("/", f" {vocab.slash} ")
        .replace("-", f" {vocab.dash} ")
        .replace("_", f" {vocab.underscore} ")
    )
    return _WHITESPACE_RE.sub(" ", spoken).strip()


def _rewrite_emails(text: str, vocab: Vocabulary) -> str:
    def _replace(match: re.Match[str]) -> str:
        local, domain = match.groups()
        return f"{local} {vocab.at} {_spell_separators(domain, vocab)}"

    return _EMAIL_RE.sub(_replace, text)


def _rewrite_urls(text: str, vocab: Vocabulary) -> str:
    def _replace(match: re.Match[str]) -> str:
        raw = match.group(0)
        url = raw.rstrip(_URL_TRAILING_PUNCT)
        trailing = raw[len(url):]
        url = _SCHEME_RE.sub("", url).rstrip("/")
        url = _URL_NOISE_RE.sub(" ", url)
        return _spell_separators(url, vocab) + trailing

    return _URL_RE.sub(_replace, text)


def normalize(text: str, language: str = "lt") -> str:
    """
    Rewrite raw generated text into a form a speech synthesizer reads well.

    Args:
        text: Raw chunk text
        language: Language tag choosing the vocabulary (lt by default)

    Returns:
        Normalized text; "" for empty input
    """
    if not text:
        return ""

    vocab = get_vocabulary(language)
    text = _line_breaks_to_sentences(text)
    text = _rewrite_dates(text, vocab)
    text = _rewrite_currency(text, vocab)
    text = _rewrite_emails(text, vocab)
    text = _rewrite_urls(text, vocab)
    return _WHITESPACE_RE.sub(" ", text).strip()
