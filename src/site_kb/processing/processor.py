"""
Content Processor

Turns raw crawled pages into indexable Documents:

1. Clean whitespace and control characters
2. Drop pages below the minimum content length
3. Classify the page type (faq -> product -> article -> webpage)
4. Split long content into sentence-aligned chunks
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable, List, Sequence, Tuple

from ..core.errors import ContentTooShort
from ..crawler.crawler import RawPage
from .models import Document, DocumentType, ProcessingResult, document_id_for

logger = logging.getLogger("kb.processor")

_WHITESPACE = re.compile(r"\s+")

# Contiguous, non-empty spans covering the whole text: a run of
# non-terminators followed by its terminators, or a trailing remainder.
_SENTENCE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+")

# (type, url keywords, title keywords, content keywords); first match wins
CLASSIFICATION_RULES: Tuple[Tuple[DocumentType, Tuple[str, ...], Tuple[str, ...], Tuple[str, ...]], ...] = (
    (
        DocumentType.FAQ,
        ("/faq", "/faqs", "/help", "/questions"),
        ("faq", "frequently asked"),
        ("frequently asked questions",),
    ),
    (
        DocumentType.PRODUCT,
        ("/product", "/products", "/service", "/services", "/pricing", "/shop"),
        ("product", "service", "pricing"),
        ("add to cart",),
    ),
    (
        DocumentType.ARTICLE,
        ("/blog", "/article", "/articles", "/news", "/posts"),
        ("blog", "article"),
        ("published on", "posted on"),
    ),
)


def clean_text(text: str) -> str:
    """
    Remove control characters and collapse every whitespace run to one space.
    """
    if not text:
        return ""

    # Cc covers NUL, DEL, BEL, ...; whitespace controls become spaces first
    without_controls = "".join(
        " " if ch.isspace() else ch
        for ch in text
        if ch.isspace() or unicodedata.category(ch) != "Cc"
    )
    return _WHITESPACE.sub(" ", without_controls).strip()


def classify(url: str, title: str, content: str) -> DocumentType:
    url_lower = url.lower()
    title_lower = (title or "").lower()
    content_lower = content.lower()

    for doc_type, url_keys, title_keys, content_keys in CLASSIFICATION_RULES:
        if any(key in url_lower for key in url_keys):
            return doc_type
        if any(key in title_lower for key in title_keys):
            return doc_type
        if any(key in content_lower for key in content_keys):
            return doc_type

    return DocumentType.WEBPAGE


def _hard_split(text: str, max_length: int) -> List[str]:
    return [text[i : i + max_length] for i in range(0, len(text), max_length)]


def chunk_content(content: str, max_length: int = 2000) -> List[str]:
    """
    Split content into chunks of at most `max_length` characters.

    Whole sentences are accumulated greedily until the next one would
    overflow. A single sentence longer than `max_length` is hard-split.
    Joining the chunks with a single space reproduces `content` (for
    cleaned input) except where a sentence was hard-split.
    """
    content = content.strip()
    if not content:
        return []
    if len(content) <= max_length:
        return [content]

    chunks: List[str] = []
    chunk_start = 0
    chunk_end = 0

    for match in _SENTENCE.finditer(content):
        start, end = match.span()
        sentence = content[start:end].strip()
        if not sentence:
            continue

        if len(sentence) > max_length:
            pending = content[chunk_start:chunk_end].strip()
            if pending:
                chunks.append(pending)
            chunks.extend(_hard_split(sentence, max_length))
            chunk_start = chunk_end = end
            continue

        candidate = content[chunk_start:end].strip()
        if len(candidate) > max_length:
            chunks.append(content[chunk_start:chunk_end].strip())
            chunk_start = start

        chunk_end = end

    tail = content[chunk_start:chunk_end].strip()
    if tail:
        chunks.append(tail)

    return chunks


class ContentProcessor:
    """
    Stateless page-to-document transformer.
    """

    def __init__(self, min_content_length: int = 100, max_chunk_length: int = 2000) -> None:
        self.min_content_length = min_content_length
        self.max_chunk_length = max_chunk_length

    def process_page(self, page: RawPage, tenant_id: str, collection_id: str) -> List[Document]:
        """
        Build the documents for one page.

        Raises
        ------
        ContentTooShort
            If the cleaned content is below the minimum length.
        """
        content = clean_text(page.text)
        if len(content) < self.min_content_length:
            raise ContentTooShort(page.url, len(content), self.min_content_length)

        title = clean_text(page.title)
        page_type = classify(page.url, title, content)
        chunks = chunk_content(content, self.max_chunk_length)
        total = len(chunks)

        return [
            Document(
                id=document_id_for(tenant_id, collection_id, page.url, index),
                tenant_id=tenant_id,
                collection_id=collection_id,
                url=page.url,
                title=f"{title} (Part {index + 1})" if total > 1 else title,
                description=page.description,
                content=chunk,
                type=page_type,
                chunk_index=index,
                total_chunks=total,
                metadata=dict(page.metadata),
            )
            for index, chunk in enumerate(chunks)
        ]

    def process(
        self,
        pages: Iterable[RawPage],
        tenant_id: str,
        collection_id: str,
    ) -> ProcessingResult:
        result = ProcessingResult()

        for page in pages:
            try:
                documents = self.process_page(page, tenant_id, collection_id)
            except ContentTooShort as exc:
                logger.info("Skipping %s - content too short (%d chars)", page.url, exc.length)
                result.pages_dropped += 1
                result.dropped_urls.append(page.url)
                continue
            except ValueError as exc:
                # pydantic rejects malformed pages (e.g. empty url) here
                logger.error("Failed to process page %s: %s", page.url, exc)
                result.pages_failed += 1
                result.failed_urls[page.url] = str(exc)
                continue

            result.documents.extend(documents)
            result.pages_processed += 1

        logger.info(
            "Processed %d pages into %d documents (%d dropped, %d failed)",
            result.pages_processed,
            len(result.documents),
            result.pages_dropped,
            result.pages_failed,
        )
        return result


def split_batches(items: Sequence, size: int) -> List[Sequence]:
    return [items[i : i + size] for i in range(0, len(items), size)]
