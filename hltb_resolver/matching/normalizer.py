from __future__ import annotations

import re
from datetime import date

from ..config import MATCHING
from ..models import NormalizationLevel, NormalizedTitle
from .mappings import MappingTables, load_mapping_tables

_GLYPHS_RE = re.compile(r"[™®©]")
_WS_RE = re.compile(r"\s+")
_APOSTROPHE_RE = re.compile(r"['’‘`]")
_AMP_RE = re.compile(r"\s*&\s*")
_PUNCT_RE = re.compile(r"[^\w\s]|_")
_YEAR_RE = re.compile(r"\((\d{4})\)")
_YEAR_STRIP_RE = re.compile(r"\s*\(\d{4}\)\s*")
# First subtitle separator: a colon, or a spaced hyphen / en dash / em dash.
_SUBTITLE_RE = re.compile(r"\s*(?::|\s-\s|\s?[–—]\s?)")
_ARTICLES = ("the", "a", "an")

_ROMAN = {
    "i": "1",
    "ii": "2",
    "iii": "3",
    "iv": "4",
    "v": "5",
    "vi": "6",
    "vii": "7",
    "viii": "8",
    "ix": "9",
    "x": "10",
}

STOP_WORDS = frozenset(
    {
        "the",
        "a",
        "an",
        "and",
        "or",
        "of",
        "in",
        "on",
        "at",
        "to",
        "for",
        "with",
        "from",
        "by",
        "as",
        "is",
        "was",
        "edition",
        "game",
        "collection",
    }
)


class TitleNormalizer:
    """
    Pure string transforms at three levels of aggressiveness.

    - minimal: lowercase, trademark glyphs removed, whitespace collapsed; punctuation kept.
    - standard: minimal plus punctuation removed ("&" becomes "and", apostrophes dropped).
    - aggressive: standard plus subtitle, leading article and edition suffix removal, acronym
      expansion and Roman numeral (I-X) conversion.

    Every level is idempotent and returns "" for empty input.
    """

    def __init__(self, tables: MappingTables | None = None, *, min_year: int = MATCHING.min_year):
        self.tables = tables if tables is not None else load_mapping_tables()
        self.min_year = min_year

    def normalize(self, title: str | None, level: NormalizationLevel | str) -> str:
        level = NormalizationLevel(level)
        if level is NormalizationLevel.MINIMAL:
            return self.minimal(title)
        if level is NormalizationLevel.STANDARD:
            return self.standard(title)
        return self.aggressive(title)

    def tagged(self, title: str | None, level: NormalizationLevel | str) -> NormalizedTitle:
        level = NormalizationLevel(level)
        return NormalizedTitle(self.normalize(title, level), level)

    def forms(self, title: str | None) -> dict[str, str]:
        return {lvl.value: self.normalize(title, lvl) for lvl in NormalizationLevel}

    @staticmethod
    def minimal(title: str | None) -> str:
        if not title or not isinstance(title, str):
            return ""
        s = _GLYPHS_RE.sub("", title)
        return _WS_RE.sub(" ", s.lower()).strip()

    @classmethod
    def standard(cls, title: str | None) -> str:
        s = cls.minimal(title)
        if not s:
            return ""
        s = _APOSTROPHE_RE.sub("", s)
        s = _AMP_RE.sub(" and ", s)
        s = _PUNCT_RE.sub(" ", s)
        return _WS_RE.sub(" ", s).strip()

    def aggressive(self, title: str | None) -> str:
        s = self.minimal(title)
        if not s:
            return ""

        whole = self.standard(s)
        expanded = self.tables.acronyms.get(whole)
        if expanded:
            return self._convert_roman(expanded)

        s = self.standard(self._drop_subtitle(s))
        if not s:
            # Nothing but punctuation before the separator.
            s = whole
        s = self._drop_articles(s)
        s = self._drop_editions(s)
        s = self._expand_acronym_prefix(s)
        return self._convert_roman(s)

    @staticmethod
    def _drop_subtitle(s: str) -> str:
        parts = _SUBTITLE_RE.split(s, maxsplit=1)
        head = parts[0].strip()
        return head if head else s

    @staticmethod
    def _drop_articles(s: str) -> str:
        words = s.split(" ")
        while len(words) > 1 and words[0] in _ARTICLES:
            words = words[1:]
        return " ".join(words)

    def _drop_editions(self, s: str) -> str:
        changed = True
        while changed:
            changed = False
            for edition in self.tables.editions:
                if s.endswith(" " + edition):
                    s = s[: -len(edition) - 1].rstrip()
                    changed = True
                    break
        return s

    def _expand_acronym_prefix(self, s: str) -> str:
        if s in self.tables.acronyms:
            return self.tables.acronyms[s]
        words = s.split(" ")
        # Longest prefix first ("cs go ..." before "cs ...").
        for n in range(min(len(words) - 1, 2), 0, -1):
            prefix = " ".join(words[:n])
            expanded = self.tables.acronyms.get(prefix)
            if expanded:
                return " ".join([expanded] + words[n:])
        return s

    @staticmethod
    def _convert_roman(s: str) -> str:
        words = s.split(" ")
        # The first token is left alone: "X Com", "I Am Bread".
        out = words[:1] + [_ROMAN.get(w, w) for w in words[1:]]
        return " ".join(out)

    def extract_year(self, title: str | None) -> int | None:
        if not title or not isinstance(title, str):
            return None
        m = _YEAR_RE.search(title)
        if not m:
            return None
        year = int(m.group(1))
        if self.min_year <= year <= date.today().year + 1:
            return year
        return None

    @staticmethod
    def remove_year(title: str | None) -> str:
        if not title or not isinstance(title, str):
            return ""
        return _YEAR_STRIP_RE.sub(" ", title).strip()

    def get_core_words(
        self, title: str | None, min_length: int = MATCHING.core_word_min_length
    ) -> list[str]:
        s = self.standard(title)
        if not s:
            return []
        return [w for w in s.split(" ") if len(w) >= min_length and w not in STOP_WORDS]
