"""
Search and pagination over clipboard history.

Two retrieval paths, one per query:
- Lexical: conjunctive, case-insensitive substring terms, applied to the
  loaded window in memory or to the whole store
- Semantic: embed the query, rank stored vectors by cosine similarity,
  keep candidates at or above the threshold
"""

import logging
from typing import Iterable

from .embedding_client import EmbeddingClient
from .store import ItemStore
from .types import AI_CATEGORY, DEFAULT_CATEGORY, ClipItem, ItemKind, ScoredItem

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.70
CANDIDATE_LIMIT = 30

_UNFILTERED = {DEFAULT_CATEGORY.casefold(), AI_CATEGORY.casefold()}


def query_terms(query: str) -> list[str]:
    """Lower-cased whitespace-separated terms."""
    return [t.casefold() for t in query.split()]


def item_matches_query(item: ClipItem, terms: list[str]) -> bool:
    """
    Every term must be a substring of the item's searchable text.

    Text items search their content, images their joined tag names, links
    either one.
    """
    if not terms:
        return True
    content = item.content.casefold()
    tags = " ".join(sorted(item.tags)).casefold()
    for term in terms:
        if item.kind is ItemKind.TEXT:
            found = term in content
        elif item.kind is ItemKind.IMAGE:
            found = term in tags
        else:
            found = term in content or term in tags
        if not found:
            return False
    return True


def item_in_category(item: ClipItem, category: str) -> bool:
    """Pseudo-categories pass everything; otherwise the item needs that tag."""
    wanted = category.strip().casefold()
    if wanted in _UNFILTERED:
        return True
    return any(tag.strip().casefold() == wanted for tag in item.tags)


def filter_items(items: Iterable[ClipItem], query: str, category: str = DEFAULT_CATEGORY) -> list[ClipItem]:
    """Lexical filter over an in-memory window, order preserved."""
    terms = query_terms(query)
    return [
        item for item in items
        if item_in_category(item, category) and item_matches_query(item, terms)
    ]


def is_semantic_query(query: str, category: str) -> bool:
    """Semantic search runs for a non-empty query under the AI category."""
    return category.strip().casefold() == AI_CATEGORY.casefold() and bool(query.strip())


class SearchEngine:
    """
    Query paths over the store.

    Errors from the embedding client or the store propagate unchanged;
    deciding how to surface them belongs to the caller.
    """

    def __init__(
        self,
        store: ItemStore,
        client: EmbeddingClient,
        *,
        threshold: float = SIMILARITY_THRESHOLD,
        candidate_limit: int = CANDIDATE_LIMIT,
    ):
        self._store = store
        self._client = client
        self.threshold = threshold
        self.candidate_limit = candidate_limit

    def lexical_all(self, query: str, category: str = DEFAULT_CATEGORY) -> list[ClipItem]:
        """Full-store lexical search ("search all data"), newest first.

        Matches text content only, so images are found here by category
        alone and only when the query is empty.
        """
        items = self._store.search_items(query, category)
        seen: set[int] = set()
        unique = []
        for item in items:
            if item.id not in seen:
                seen.add(item.id)
                unique.append(item)
        return unique

    def semantic(self, query: str) -> list[ScoredItem]:
        """
        Items similar to the query, most similar first.

        Raises:
            EmbeddingError: embedding the query failed
            StoreError: ranking failed
        """
        provider, vector = self._client.embed_with_provider(query)
        ranked = self._store.rank_by_similarity(vector, self.candidate_limit, provider=provider)
        results = []
        for item_id, score in ranked:
            if score < self.threshold:
                continue
            item = self._store.get_item(item_id)
            if item is not None:
                results.append(ScoredItem(item=item, score=score))
        results.sort(key=lambda r: r.score, reverse=True)
        logger.info("Semantic search: %d of %d candidates >= %.2f",
                    len(results), len(ranked), self.threshold)
        return results


class PageCursor:
    """
    Forward-only paging over listItems.

    Each page advances the offset by exactly the page size; has_more turns
    false the first time a page comes back short.
    """

    def __init__(self, page_size: int):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self.offset = 0
        self.has_more = True

    def advance(self, returned: int) -> None:
        self.offset += self.page_size
        self.has_more = returned == self.page_size

    def reset(self) -> None:
        self.offset = 0
        self.has_more = True
