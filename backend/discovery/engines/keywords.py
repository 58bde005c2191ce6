"""Keyword & attribute extractor: question text to search terms and tags.

Pipeline: lowercase → fold accents → strip punctuation → whitespace split →
drop per-locale stop-words → drop tokens shorter than MIN_TOKEN_LENGTH →
suffix-stem → expand through the cross-locale synonym table.

Stems are matched as substrings of an experience's normalized search text,
so an over-eager stem ("spher" for "spheres") still matches the original
word. Expansion members are stemmed with their own locale's rules when the
table is indexed.

Pure, synchronous and deterministic. Supported locales: en, de, fr, es;
anything else falls back to en.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field

SUPPORTED_LOCALES = ("en", "de", "fr", "es")
DEFAULT_LOCALE = "en"
MIN_TOKEN_LENGTH = 3
MIN_STEM_LENGTH = 3

_NON_WORD = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

STOP_WORDS: dict[str, frozenset[str]] = {
    "en": frozenset({
        "a", "about", "above", "after", "again", "all", "also", "am", "an", "and",
        "any", "are", "around", "as", "at", "be", "been", "before", "being", "below",
        "between", "both", "but", "by", "can", "could", "did", "do", "does", "doing",
        "down", "during", "each", "else", "ever", "every", "few", "for", "from", "had",
        "has", "have", "having", "he", "her", "here", "hers", "him", "his", "how", "i",
        "if", "in", "into", "is", "it", "its", "just", "like", "me", "more", "most",
        "my", "near", "nearby", "no", "nor", "not", "of", "off", "on", "once", "only",
        "or", "other", "our", "out", "over", "own", "same", "she", "should", "so",
        "some", "such", "than", "that", "the", "their", "them", "then", "there",
        "these", "they", "this", "those", "through", "to", "too", "under", "until",
        "up", "very", "was", "we", "were", "what", "when", "where", "which", "while",
        "who", "whom", "why", "will", "with", "would", "you", "your", "anyone",
        "someone", "something", "show", "find", "tell", "people", "others",
    }),
    "de": frozenset({
        "aber", "alle", "als", "also", "am", "an", "auch", "auf", "aus", "bei", "bin",
        "bis", "das", "dass", "dem", "den", "der", "des", "die", "doch", "dort", "du",
        "ein", "eine", "einem", "einen", "einer", "er", "es", "etwas", "für", "hat",
        "hatte", "ich", "ihr", "im", "in", "ist", "ja", "jemand", "kann", "mein",
        "meine", "mich", "mir", "mit", "nach", "nahe", "neben", "nicht", "noch", "nur",
        "oder", "sehr", "sich", "sie", "sind", "so", "über", "um", "und", "uns",
        "unter", "vom", "von", "vor", "war", "waren", "was", "wann", "wer", "wie",
        "wir", "wo", "zu", "zum", "zur", "zeige", "andere",
    }),
    "fr": frozenset({
        "au", "aux", "avec", "ce", "ces", "cette", "dans", "de", "des", "du", "elle",
        "en", "est", "et", "été", "était", "il", "ils", "je", "la", "le", "les",
        "leur", "lui", "ma", "mais", "me", "mes", "moi", "mon", "ne", "nous", "on",
        "ou", "où", "par", "pas", "pour", "près", "proche", "qu", "que", "qui", "sa",
        "se", "ses", "son", "sur", "ta", "te", "tes", "toi", "ton", "tu", "un", "une",
        "vous", "vu", "quelqu", "autres", "montre",
    }),
    "es": frozenset({
        "al", "algo", "alguien", "cerca", "como", "con", "cuando", "de", "del",
        "donde", "el", "ella", "ellos", "en", "era", "es", "esta", "este", "esto",
        "fue", "ha", "hay", "la", "las", "le", "lo", "los", "me", "mi", "mis", "muy",
        "no", "nos", "otros", "para", "pero", "por", "que", "qué", "se", "sin", "su",
        "sus", "un", "una", "uno", "yo", "vi", "muestra",
    }),
}

# Longest suffix first. (suffix, replacement)
_SUFFIXES: dict[str, list[tuple[str, str]]] = {
    "en": [
        ("ations", ""), ("ation", ""), ("ings", ""), ("ing", ""), ("edly", ""),
        ("ies", "y"), ("ied", "y"), ("ed", ""), ("es", ""), ("ly", ""), ("s", ""),
    ],
    "de": [
        ("ungen", ""), ("ung", ""), ("heit", ""), ("keit", ""), ("lich", ""),
        ("isch", ""), ("ern", ""), ("en", ""), ("er", ""), ("es", ""), ("e", ""),
        ("n", ""), ("s", ""),
    ],
    "fr": [
        ("ements", ""), ("ement", ""), ("ations", ""), ("ation", ""), ("euses", ""),
        ("euse", ""), ("eux", ""), ("es", ""), ("s", ""), ("e", ""),
    ],
    "es": [
        ("aciones", ""), ("acion", ""), ("mente", ""), ("idades", ""), ("idad", ""),
        ("es", ""), ("os", ""), ("as", ""), ("s", ""), ("o", ""), ("a", ""),
    ],
}

# canonical tag -> {locale: words}. Every member expands to every other member.
EXPANSIONS: dict[str, dict[str, list[str]]] = {
    "ufo": {"en": ["ufo", "uap", "saucer"], "de": ["ufo"], "fr": ["ovni"], "es": ["ovni"]},
    "light": {"en": ["light", "orb", "glow"], "de": ["licht", "kugel"], "fr": ["lumière", "orbe"], "es": ["luz", "luces", "orbe"]},
    "lake": {"en": ["lake"], "fr": ["lac"], "es": ["lago"]},
    "sky": {"en": ["sky"], "de": ["himmel"], "fr": ["ciel"], "es": ["cielo"]},
    "forest": {"en": ["forest", "woods"], "de": ["wald"], "fr": ["forêt"], "es": ["bosque"]},
    "night": {"en": ["night"], "de": ["nacht"], "fr": ["nuit"], "es": ["noche"]},
    "moon": {"en": ["moon"], "de": ["mond"], "fr": ["lune"], "es": ["luna"]},
    "triangle": {"en": ["triangle", "triangular"], "de": ["dreieck"], "fr": ["triangle"], "es": ["triángulo"]},
    "dream": {"en": ["dream", "nightmare"], "de": ["traum", "albtraum"], "fr": ["rêve", "cauchemar"], "es": ["sueño", "pesadilla"]},
    "ghost": {"en": ["ghost", "spirit", "apparition"], "de": ["geist", "gespenst"], "fr": ["fantôme", "esprit"], "es": ["fantasma", "espíritu"]},
    "shadow": {"en": ["shadow"], "de": ["schatten"], "fr": ["ombre"], "es": ["sombra"]},
    "entity": {"en": ["entity", "creature", "alien"], "de": ["wesen", "außerirdisch"], "fr": ["entité", "créature", "extraterrestre"], "es": ["entidad", "criatura", "extraterrestre"]},
    "abduction": {"en": ["abduction", "abducted"], "de": ["entführung"], "fr": ["enlèvement"], "es": ["abducción"]},
    "voice": {"en": ["voice"], "de": ["stimme"], "fr": ["voix"], "es": ["voz"]},
    "nde": {"en": ["nde", "tunnel"], "de": ["nahtod"], "fr": ["emi"], "es": ["ecm"]},
    "obe": {"en": ["obe"], "de": ["ake"], "fr": ["ehc"], "es": ["ehc"]},
    "premonition": {"en": ["premonition", "precognition"], "de": ["vorahnung"], "fr": ["prémonition"], "es": ["premonición"]},
    "telepathy": {"en": ["telepathy"], "de": ["telepathie"], "fr": ["télépathie"], "es": ["telepatía"]},
    "synchronicity": {"en": ["synchronicity", "coincidence"], "de": ["synchronizität", "zufall"], "fr": ["synchronicité", "coïncidence"], "es": ["sincronicidad", "coincidencia"]},
}


def normalize_text(text: str) -> str:
    """Lowercase, fold accents, replace punctuation with spaces, collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text.lower().replace("ß", "ss"))
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", _NON_WORD.sub(" ", folded)).strip()


_FOLDED_STOP_WORDS: dict[str, frozenset[str]] = {
    locale: frozenset(normalize_text(word) for word in words)
    for locale, words in STOP_WORDS.items()
}


def resolve_locale(locale: str | None) -> str:
    base = (locale or DEFAULT_LOCALE).lower().split("-")[0].split("_")[0]
    return base if base in SUPPORTED_LOCALES else DEFAULT_LOCALE


def stem(token: str, locale: str = DEFAULT_LOCALE) -> str:
    """Strip the longest matching suffix, keeping at least MIN_STEM_LENGTH chars."""
    for suffix, replacement in _SUFFIXES[resolve_locale(locale)]:
        if token.endswith(suffix):
            candidate = token[: len(token) - len(suffix)] + replacement
            if len(candidate) >= MIN_STEM_LENGTH:
                return candidate
    return token


def _build_index() -> tuple[dict[str, str], dict[str, frozenset[str]]]:
    """Map every raw and stemmed member to its tag; collect each tag's stems."""
    lookup: dict[str, str] = {}
    members: dict[str, frozenset[str]] = {}
    for tag, by_locale in EXPANSIONS.items():
        stems: set[str] = set()
        for locale, words in by_locale.items():
            for word in words:
                raw = normalize_text(word)
                stemmed = stem(raw, locale)
                stems.add(stemmed)
                lookup.setdefault(raw, tag)
                lookup.setdefault(stemmed, tag)
        members[tag] = frozenset(stems)
    return lookup, members


_LOOKUP, _MEMBERS = _build_index()


@dataclass
class ExtractedTerms:
    """Extractor output.

    keywords: every stem and expansion (flat)
    tags: canonical names of the expansion groups that were hit
    groups: one term set per surviving token, used for keyword scoring
    """

    keywords: set[str] = field(default_factory=set)
    tags: set[str] = field(default_factory=set)
    groups: list[set[str]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.keywords


class KeywordExtractor:
    """Locale-aware keyword and tag extraction."""

    def tokenize(self, text: str, locale: str = DEFAULT_LOCALE) -> list[str]:
        """Normalized tokens with stop-words and short tokens removed, in order."""
        stop = _FOLDED_STOP_WORDS[resolve_locale(locale)]
        tokens = []
        for token in normalize_text(text).split():
            if token in stop or len(token) < MIN_TOKEN_LENGTH:
                continue
            tokens.append(token)
        return tokens

    def extract(self, question: str, locale: str = DEFAULT_LOCALE) -> ExtractedTerms:
        locale = resolve_locale(locale)
        terms = ExtractedTerms()
        if not question or not question.strip():
            return terms

        seen_stems: set[str] = set()
        for token in self.tokenize(question, locale):
            token_stem = stem(token, locale)
            if token_stem in seen_stems:
                continue
            seen_stems.add(token_stem)

            group = {token_stem}
            tag = _LOOKUP.get(token) or _LOOKUP.get(token_stem)
            if tag is not None:
                group |= _MEMBERS[tag]
                terms.tags.add(tag)
            terms.groups.append(group)
            terms.keywords |= group
        return terms

    def derive_tags(self, text: str, locale: str = DEFAULT_LOCALE) -> list[str]:
        """Canonical tags mentioned in free text, sorted."""
        return sorted(self.extract(text, locale).tags)
