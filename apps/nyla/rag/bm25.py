"""
BM25 lexical index over chunk sparse views.

Scoring is Okapi BM25 from rank_bm25 with a non-negative IDF; this module
adds the language-aware tokenizer, posting lists for zero-match exclusion and
all-or-nothing builds.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from rank_bm25 import BM25Okapi

from .errors import IndexBuildError

logger = logging.getLogger(__name__)


_TOKEN_RE = re.compile(
    r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]+"
    r"|[^\W\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]+"
)
_CJK_RUN = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]+")

STOPWORDS = frozenset("""
a an and are as at be but by for from has have in is it its of on or that the
this to was were will with
""".split())


def tokenize(text: str) -> List[str]:
    """
    Tokenize text for BM25.

    Lowercases and splits on whitespace and punctuation. A run of CJK
    characters is emitted as one word token and, additionally, one token per
    character so partial matches still score.
    """
    if not text:
        return []
    tokens: List[str] = []
    for piece in _TOKEN_RE.findall(text.lower()):
        if _CJK_RUN.fullmatch(piece):
            if len(piece) > 1:
                tokens.append(piece)
            tokens.extend(piece)
        elif piece not in STOPWORDS:
            tokens.append(piece)
    return tokens


class _NonNegativeBM25(BM25Okapi):
    """BM25Okapi with the smoothed IDF ln(1 + (N - df + 0.5) / (df + 0.5))."""

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log(1.0 + (self.corpus_size - freq + 0.5) / (freq + 0.5))


class BM25Index:
    """
    Immutable BM25 index.

    Build with `BM25Index.build(documents)`; a failed build raises
    IndexBuildError and leaves whatever index the caller was serving alone.
    """

    def __init__(
        self,
        doc_ids: List[str],
        tokenized: List[List[str]],
        k1: float = 1.2,
        b: float = 0.75,
    ):
        self.k1 = k1
        self.b = b
        self.doc_ids = list(doc_ids)
        self._position = {doc_id: i for i, doc_id in enumerate(self.doc_ids)}
        self.postings: Dict[str, Set[int]] = {}
        for i, tokens in enumerate(tokenized):
            for term in set(tokens):
                self.postings.setdefault(term, set()).add(i)

        self._bm25: Optional[BM25Okapi] = None
        if any(tokenized):
            self._bm25 = _NonNegativeBM25(tokenized, k1=k1, b=b)
        self.avg_doc_length = self._bm25.avgdl if self._bm25 else 0.0

    @classmethod
    def build(
        cls,
        documents: Iterable[Tuple[str, str]],
        k1: float = 1.2,
        b: float = 0.75,
    ) -> "BM25Index":
        """
        Build an index from (doc_id, text) pairs.

        Raises:
            IndexBuildError: duplicate ids or any failure while indexing
        """
        doc_ids: List[str] = []
        tokenized: List[List[str]] = []
        seen: Set[str] = set()
        try:
            for doc_id, text in documents:
                if doc_id in seen:
                    raise IndexBuildError("Duplicate document id in BM25 build", doc_id=doc_id)
                seen.add(doc_id)
                doc_ids.append(doc_id)
                tokenized.append(tokenize(text))
            index = cls(doc_ids, tokenized, k1=k1, b=b)
        except IndexBuildError:
            raise
        except Exception as e:
            raise IndexBuildError(f"BM25 build failed: {e}", documents=len(doc_ids)) from e

        logger.info(
            "Built BM25 index: %d docs, %d terms, avg length %.1f",
            len(index), len(index.postings), index.avg_doc_length,
        )
        return index

    def __len__(self) -> int:
        return len(self.doc_ids)

    def document_frequency(self, term: str) -> int:
        return len(self.postings.get(term, ()))

    def term_count(self, doc_id: str, term: str) -> int:
        if self._bm25 is None or doc_id not in self._position:
            return 0
        return self._bm25.doc_freqs[self._position[doc_id]].get(term, 0)

    def doc_length(self, doc_id: str) -> int:
        if self._bm25 is None or doc_id not in self._position:
            return 0
        return self._bm25.doc_len[self._position[doc_id]]

    def search(self, query_tokens: Sequence[str], k: int = 40) -> List[Tuple[str, float]]:
        """
        Top-k documents by BM25 score.

        Documents sharing no term with the query are never returned.

        Returns:
            List of (doc_id, score) sorted by score descending
        """
        if self._bm25 is None or k <= 0:
            return []
        terms = list(dict.fromkeys(t for t in query_tokens if t))
        matched: Set[int] = set()
        for term in terms:
            matched |= self.postings.get(term, set())
        if not matched:
            return []

        positions = sorted(matched)
        scores = self._bm25.get_batch_scores(terms, positions)
        ranked = sorted(zip(positions, scores), key=lambda pair: (-pair[1], pair[0]))
        return [(self.doc_ids[pos], float(score)) for pos, score in ranked[:k]]

    def search_text(self, query: str, k: int = 40) -> List[Tuple[str, float]]:
        return self.search(tokenize(query), k)
