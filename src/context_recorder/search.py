"""In-memory full-text index over context entries.

The index is a disposable projection of the store: it can be dropped and
rebuilt from ``ContextStorage.get_all()`` at any time, and it never answers
with anything but entry ids. Matching is token based and tolerant:

* exact: the query token equals an indexed token
* prefix: the query token is a prefix of an indexed token
* fuzzy: the Levenshtein distance is at most round(fuzzy * len(token))

Scores are BM25 per field, multiplied by the field boost and by a weight
for the kind of match, then summed over query tokens.
"""

from __future__ import annotations

import bisect
import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from rapidfuzz.distance import Levenshtein

from .models import ContextEntry

if TYPE_CHECKING:
    from .storage import ContextStorage

logger = logging.getLogger(__name__)

# Runs of letters and digits; punctuation, underscores and whitespace split
TOKEN_RE = re.compile(r"[^\W_]+")

DEFAULT_BOOSTS = {"content": 2.0, "tags": 3.0, "file_path": 1.0, "author": 1.0}
FIELDS = tuple(DEFAULT_BOOSTS)

# BM25 parameters
BM25_K1 = 1.2
BM25_B = 0.7
BM25_D = 0.5

# Relative value of a non-exact match
PREFIX_WEIGHT = 0.375
FUZZY_WEIGHT = 0.45


def tokenize(text: str) -> list[str]:
    """Split text into lower-case search tokens."""
    return TOKEN_RE.findall(text.lower())


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class IndexState(Enum):
    """Lifecycle of the search index."""
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"


@dataclass
class SearchHit:
    """One ranked query result."""
    id: str
    score: float
    terms: list[str]


def document_fields(entry: ContextEntry) -> dict[str, str]:
    """The text indexed for an entry, per field."""
    return {
        "content": entry.content,
        "tags": " ".join(entry.tags),
        "file_path": " ".join(entry.file_paths),
        "author": entry.metadata.author or "",
    }


class SearchIndex:
    """Inverted index with prefix and fuzzy token matching."""

    def __init__(
        self,
        storage: ContextStorage,
        fuzzy: float = 0.2,
        prefix: bool = True,
        boosts: Optional[dict[str, float]] = None,
        on_built: Optional[Callable[[int], None]] = None,
    ):
        """Create an empty index over `storage`.

        Args:
            storage: Store used to (re)build the index
            fuzzy: Allowed edit distance as a fraction of token length
                (0 disables fuzzy matching)
            prefix: Whether query tokens also match longer indexed tokens
            boosts: Per-field score multipliers
            on_built: Called with the document count after every build
        """
        self.storage = storage
        self.fuzzy = fuzzy
        self.prefix = prefix
        self.boosts = dict(DEFAULT_BOOSTS)
        if boosts:
            self.boosts.update(boosts)
        self.on_built = on_built
        self.state = IndexState.EMPTY
        self._clear()

    def _clear(self) -> None:
        # token -> field -> doc seq -> term frequency
        self._postings: dict[str, dict[str, dict[int, int]]] = {}
        self._terms: list[str] = []           # sorted, for prefix lookup
        self._ids: dict[int, str] = {}        # doc seq -> entry id
        self._seqs: dict[str, int] = {}       # entry id -> doc seq
        self._field_tokens: dict[int, dict[str, list[str]]] = {}
        self._field_length_total: dict[str, int] = defaultdict(int)
        self._next_seq = 0

    @property
    def document_count(self) -> int:
        return len(self._ids)

    @property
    def is_ready(self) -> bool:
        return self.state is IndexState.READY

    # ========== Lifecycle ==========

    def build(self) -> int:
        """Discard the index and rebuild it from every stored entry.

        Returns:
            Number of documents indexed

        Raises:
            StorageError: If the store cannot be read; the index is left
                EMPTY
        """
        self.state = IndexState.BUILDING
        self._clear()
        try:
            entries = self.storage.get_all()
        except Exception:
            self.state = IndexState.EMPTY
            raise
        # get_all() is newest first; index oldest first so that insertion
        # order (the tie-breaker) follows creation
        for entry in reversed(entries):
            self._index(entry)
        self.state = IndexState.READY
        logger.info("Built search index with %d documents", self.document_count)
        if self.on_built is not None:
            self.on_built(self.document_count)
        return self.document_count

    def reset(self) -> None:
        """Drop all documents and go back to EMPTY."""
        self._clear()
        self.state = IndexState.EMPTY

    def _ensure_ready(self) -> None:
        if self.state is not IndexState.READY:
            logger.debug("Search index is %s, building on first use", self.state.value)
            self.build()

    # ========== Incremental maintenance ==========

    def add_document(self, entry: ContextEntry) -> None:
        """Index one entry, replacing any previous version of it.

        Does nothing until the index has been built.
        """
        if self.state is not IndexState.READY:
            return
        if entry.id in self._seqs:
            self._unindex(entry.id)
        self._index(entry)

    def remove_document(self, context_id: str) -> None:
        """Drop one entry from the index. Does nothing until built."""
        if self.state is not IndexState.READY:
            return
        if context_id in self._seqs:
            self._unindex(context_id)

    def _index(self, entry: ContextEntry) -> None:
        seq = self._next_seq
        self._next_seq += 1
        self._ids[seq] = entry.id
        self._seqs[entry.id] = seq

        field_tokens = {name: tokenize(text) for name, text in document_fields(entry).items()}
        self._field_tokens[seq] = field_tokens
        for name, tokens in field_tokens.items():
            self._field_length_total[name] += len(tokens)
            for token in tokens:
                fields = self._postings.get(token)
                if fields is None:
                    fields = self._postings[token] = {}
                    bisect.insort(self._terms, token)
                docs = fields.setdefault(name, {})
                docs[seq] = docs.get(seq, 0) + 1

    def _unindex(self, context_id: str) -> None:
        seq = self._seqs.pop(context_id)
        del self._ids[seq]
        field_tokens = self._field_tokens.pop(seq)
        for name, tokens in field_tokens.items():
            self._field_length_total[name] -= len(tokens)
            for token in set(tokens):
                fields = self._postings[token]
                docs = fields[name]
                docs.pop(seq, None)
                if not docs:
                    del fields[name]
                if not fields:
                    del self._postings[token]
                    pos = bisect.bisect_left(self._terms, token)
                    del self._terms[pos]

    # ========== Queries ==========

    def query(self, text: str, limit: int = 50) -> list[str]:
        """Entry ids matching `text`, most relevant first."""
        return [hit.id for hit in self.search(text, limit)]

    def search(self, text: str, limit: Optional[int] = 50) -> list[SearchHit]:
        """Ranked hits with scores and the indexed terms that matched."""
        self._ensure_ready()
        query_tokens = list(dict.fromkeys(tokenize(text)))
        if not query_tokens or not self._ids:
            return []

        scores: dict[int, float] = defaultdict(float)
        matched_queries: dict[int, set[str]] = defaultdict(set)
        matched_terms: dict[int, dict[str, None]] = defaultdict(dict)

        for query_token in query_tokens:
            for term, weight in self._expand(query_token).items():
                for seq, score in self._score_term(term).items():
                    scores[seq] += score * weight
                    matched_queries[seq].add(query_token)
                    matched_terms[seq][term] = None

        hits = [
            SearchHit(
                id=self._ids[seq],
                score=score * len(matched_queries[seq]),
                terms=list(matched_terms[seq]),
            )
            for seq, score in scores.items()
        ]
        # Stable order for equal scores: first indexed first
        hits.sort(key=lambda h: (-h.score, self._seqs[h.id]))
        if limit is not None:
            hits = hits[:limit]
        return hits

    def suggest(self, partial: str, limit: int = 10) -> list[str]:
        """Completions for a partially typed query.

        The last token of `partial` is completed from indexed tokens
        (prefix and fuzzy matches); earlier tokens are kept as typed.
        Candidates are ranked by match quality times document frequency.
        """
        self._ensure_ready()
        tokens = tokenize(partial)
        if not tokens:
            return []
        head, last = tokens[:-1], tokens[-1]

        ranked: list[tuple[float, str]] = []
        for term, weight in self._expand(last).items():
            doc_count = len({seq for docs in self._postings[term].values() for seq in docs})
            ranked.append((weight * doc_count, term))
        ranked.sort(key=lambda pair: (-pair[0], pair[1]))

        return [" ".join(head + [term]) for _, term in ranked[:limit]]

    def _expand(self, query_token: str) -> dict[str, float]:
        """Indexed terms matching a query token, with their match weight."""
        matches: dict[str, float] = {}
        if query_token in self._postings:
            matches[query_token] = 1.0

        if self.prefix:
            start = bisect.bisect_left(self._terms, query_token)
            for term in self._terms[start:]:
                if not term.startswith(query_token):
                    break
                if term == query_token:
                    continue
                distance = len(term) - len(query_token)
                weight = PREFIX_WEIGHT * len(term) / (len(term) + 0.3 * distance)
                matches[term] = max(matches.get(term, 0.0), weight)

        max_distance = round_half_up(self.fuzzy * len(query_token)) if self.fuzzy > 0 else 0
        if max_distance > 0:
            for term in self._terms:
                if abs(len(term) - len(query_token)) > max_distance:
                    continue
                distance = Levenshtein.distance(query_token, term, score_cutoff=max_distance)
                if 0 < distance <= max_distance:
                    weight = FUZZY_WEIGHT * len(term) / (len(term) + distance)
                    matches[term] = max(matches.get(term, 0.0), weight)

        return matches

    def _score_term(self, term: str) -> dict[int, float]:
        """Boosted BM25+ score of `term` for every document containing it."""
        result: dict[int, float] = defaultdict(float)
        doc_total = len(self._ids)
        for name, docs in self._postings[term].items():
            boost = self.boosts.get(name, 1.0)
            avg_length = self._field_length_total[name] / doc_total
            idf = math.log(1 + (doc_total - len(docs) + 0.5) / (len(docs) + 0.5))
            for seq, tf in docs.items():
                length = len(self._field_tokens[seq][name])
                norm = 1 - BM25_B + BM25_B * (length / avg_length if avg_length else 0.0)
                bm25 = idf * (BM25_D + tf * (BM25_K1 + 1) / (tf + BM25_K1 * norm))
                result[seq] += boost * bm25
        return result
