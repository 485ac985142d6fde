"""
Bilingual proper-noun glossary.

Maps canonical entities (projects, networks, people, terms) to their Chinese
and English aliases, spelling variants and social handles. Loaded once from
configs/glossary.yaml and read-only afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from ..infra.env import get_glossary_path
from .text import has_cjk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GlossaryEntry:
    key: str
    category: str
    primary: str
    zh: List[str] = field(default_factory=list)
    en: List[str] = field(default_factory=list)
    variants: List[str] = field(default_factory=list)
    social: List[str] = field(default_factory=list)

    def all_terms(self) -> List[str]:
        return [self.key] + self.zh + self.en + self.variants + self.social

    def aliases_for(self, matched: str) -> List[str]:
        """
        Replacement aliases for a matched term, cross-language forms first,
        then same-language synonyms, then spelling variants.
        """
        if has_cjk(matched):
            ordered = self.en + self.zh + self.variants
        else:
            ordered = self.zh + self.en + self.variants
        seen = {normalize_term(matched)}
        out = []
        for alias in ordered:
            norm = normalize_term(alias)
            if norm in seen:
                continue
            seen.add(norm)
            out.append(alias)
        return out


@dataclass(frozen=True)
class GlossaryMatch:
    term: str
    key: str
    start: int
    end: int


def normalize_term(text: str) -> str:
    """Lowercase and drop spaces, hyphens and underscores."""
    return re.sub(r"[\s_\-]+", "", text.lower().strip())


class Glossary:
    """
    Read-only bilingual term table with a reverse index from every alias
    (normalized, and without leading @ or $) to its entry.
    """

    def __init__(self, entries: Dict[str, GlossaryEntry]):
        self._entries = dict(entries)
        self._reverse: Dict[str, str] = {}
        for key, entry in self._entries.items():
            self._reverse[normalize_term(key)] = key
            for term in entry.all_terms():
                norm = normalize_term(term)
                self._reverse[norm] = key
                if norm[:1] in ("@", "$"):
                    self._reverse[norm[1:]] = key
        # (term, key) pairs, longest first so overlapping matches prefer the longer term
        self._terms = sorted(
            {(t, k) for k, e in self._entries.items() for t in e.all_terms() if t},
            key=lambda pair: (-len(pair[0]), pair[0]),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Dict]) -> "Glossary":
        entries = {}
        for key, raw in (data or {}).items():
            raw = raw or {}
            entries[key] = GlossaryEntry(
                key=key,
                category=raw.get("category", "term"),
                primary=raw.get("primary", key),
                zh=list(raw.get("zh") or []),
                en=list(raw.get("en") or []),
                variants=list(raw.get("variants") or []),
                social=list(raw.get("social") or []),
            )
        return cls(entries)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Glossary":
        glossary_path = Path(path) if path else get_glossary_path()
        with open(glossary_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        glossary = cls.from_dict(raw.get("entries", {}))
        logger.info("Loaded glossary with %d entries from %s", len(glossary), glossary_path)
        return glossary

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, term: str) -> bool:
        return self.lookup(term) is not None

    def lookup(self, term: str) -> Optional[GlossaryEntry]:
        key = self._reverse.get(normalize_term(term))
        return self._entries.get(key) if key else None

    def aliases(self, term: str) -> List[str]:
        entry = self.lookup(term)
        if entry is None:
            return []
        return entry.zh + entry.en + entry.variants + entry.social

    def find(self, text: str) -> List[GlossaryMatch]:
        """
        Find glossary terms in text, longest first, without overlaps.

        Latin terms must sit on word boundaries so that "SOL" does not match
        inside "console"; CJK terms match anywhere.
        """
        if not text:
            return []
        lowered = text.lower()
        used = [False] * len(lowered)
        found: List[GlossaryMatch] = []
        for term, key in self._terms:
            needle = term.lower()
            start = lowered.find(needle)
            while start != -1:
                end = start + len(needle)
                if not any(used[start:end]) and self._on_boundary(lowered, start, end, needle):
                    for i in range(start, end):
                        used[i] = True
                    found.append(GlossaryMatch(term=text[start:end], key=key, start=start, end=end))
                start = lowered.find(needle, start + 1)
        return sorted(found, key=lambda m: m.start)

    @staticmethod
    def _on_boundary(text: str, start: int, end: int, needle: str) -> bool:
        if has_cjk(needle):
            return True
        before = text[start - 1] if start > 0 else " "
        after = text[end] if end < len(text) else " "
        return not (before.isascii() and before.isalnum()) and not (after.isascii() and after.isalnum())

    def expansion_terms(self, text: str) -> List[str]:
        """All aliases of every entity found in text, for lexical expansion."""
        terms: List[str] = []
        for match in self.find(text):
            entry = self._entries[match.key]
            for alias in entry.zh + entry.en + entry.variants + entry.social:
                if alias not in terms and alias.lower() != match.term.lower():
                    terms.append(alias)
        return terms

    def rewrite(self, text: str, max_variants: int = 3) -> List[tuple]:
        """
        Produce up to `max_variants` rewrites of text, each replacing one
        recognized entity span with one of its aliases.

        Returns (variant_text, entity_key, alias) tuples.
        """
        if max_variants <= 0:
            return []
        variants: List[tuple] = []
        seen = {text}
        for match in self.find(text):
            entry = self._entries[match.key]
            for alias in entry.aliases_for(match.term):
                rewritten = text[:match.start] + alias + text[match.end:]
                if rewritten in seen:
                    continue
                seen.add(rewritten)
                variants.append((rewritten, match.key, alias))
                if len(variants) >= max_variants:
                    return variants
        return variants

    def stats(self) -> Dict[str, object]:
        return {
            "entries": len(self._entries),
            "aliases": sum(len(e.all_terms()) - 1 for e in self._entries.values()),
            "categories": sorted({e.category for e in self._entries.values()}),
            "reverse_index_size": len(self._reverse),
        }
