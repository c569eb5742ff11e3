"""
Crawler Package

Same-site website crawling with robots.txt compliance.
"""

from .crawler import Crawler, CrawlOptions, CrawlProgress, CrawlResult, RawPage
from .urls import normalize_url, seed_url

__all__ = [
    "Crawler",
    "CrawlOptions",
    "CrawlProgress",
    "CrawlResult",
    "RawPage",
    "normalize_url",
    "seed_url",
]
