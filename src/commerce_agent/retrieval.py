"""Retrieval of API documentation chunks for a query."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, List, Mapping, Protocol

from .openapi import SpecificationCache, format_operation, list_operations

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "a", "an", "the", "to", "of", "in", "on", "for", "and", "or", "my", "me",
    "is", "it", "with", "this", "that", "from", "by", "be", "all", "show",
}


class Retriever(Protocol):
    async def search(self, query: str, category: str, top_k: int) -> List[str]:
        ...


def _terms(text: str) -> List[str]:
    terms = []
    for word in _WORD.findall(text.lower()):
        if word in _STOPWORDS:
            continue
        # crude plural folding so "items" meets "item"
        terms.append(word[:-1] if len(word) > 3 and word.endswith("s") else word)
    return terms


class SpecificationRetriever:
    """Ranks the operations of a category's OpenAPI document by term overlap.

    Each chunk is the formatted rendering of one operation. This stands in
    for a managed vector index when none is configured.
    """

    def __init__(self, cache: SpecificationCache, spec_urls: Mapping[str, str]) -> None:
        self.cache = cache
        self.spec_urls = dict(spec_urls)

    async def search(self, query: str, category: str, top_k: int) -> List[str]:
        url = self.spec_urls.get(category)
        if not url:
            logger.warning("No specification registered for category %s", category)
            return []
        document = await self.cache.load(url)
        query_terms = Counter(_terms(query))

        scored: List[tuple[float, int, str]] = []
        for index, operation in enumerate(list_operations(document)):
            chunk = format_operation(document, operation.path, operation.method)
            chunk_terms = Counter(_terms(f"{operation.path} {operation.description}"))
            score = float(sum(min(count, chunk_terms[term]) for term, count in query_terms.items()))
            if score:
                scored.append((score, index, chunk))

        scored.sort(key=lambda item: (-item[0], item[1]))
        chunks = [chunk for _, _, chunk in scored[:top_k]]
        logger.info("Retrieved %s chunks for category=%s", len(chunks), category)
        return chunks


class StaticRetriever:
    """Serves pre-chunked documentation held in memory, keyed by category."""

    def __init__(self, chunks: Mapping[str, List[str]]) -> None:
        self.chunks: Dict[str, List[str]] = {key: list(value) for key, value in chunks.items()}

    async def search(self, query: str, category: str, top_k: int) -> List[str]:
        return self.chunks.get(category, [])[:top_k]
