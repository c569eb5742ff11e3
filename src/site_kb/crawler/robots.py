"""
robots.txt Policy

Fetches a site's robots.txt once per crawl through the crawler's own HTTP
client and answers allow/deny questions for the configured user agent.
"""

from __future__ import annotations

import logging
import urllib.robotparser
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

logger = logging.getLogger("kb.crawler")


class RobotsPolicy:
    """
    Parsed robots.txt rules for one site.

    Semantics follow `urllib.robotparser`: 401/403 disallow everything,
    any other 4xx or an unreachable file allows everything.
    """

    def __init__(self, parser: Optional[urllib.robotparser.RobotFileParser], user_agent: str) -> None:
        self._parser = parser
        self._user_agent = user_agent

    @classmethod
    def allow_all(cls, user_agent: str) -> "RobotsPolicy":
        return cls(None, user_agent)

    @staticmethod
    def robots_url(root_url: str) -> str:
        parts = urlsplit(root_url)
        return urlunsplit((parts.scheme, parts.netloc, "/robots.txt", "", ""))

    @classmethod
    async def fetch(
        cls,
        client: httpx.AsyncClient,
        root_url: str,
        user_agent: str,
        timeout: float,
    ) -> "RobotsPolicy":
        """
        Download and parse robots.txt for the site rooted at `root_url`.
        """
        robots_url = cls.robots_url(root_url)
        parser = urllib.robotparser.RobotFileParser()
        parser.set_url(robots_url)

        try:
            response = await client.get(robots_url, timeout=timeout, headers={"User-Agent": user_agent})
        except httpx.HTTPError as exc:
            logger.warning(
                "robots.txt unreachable at %s (%s); allowing all",
                robots_url,
                type(exc).__name__,
            )
            return cls.allow_all(user_agent)

        if response.status_code in (401, 403):
            logger.info("robots.txt at %s is access-restricted; disallowing all", robots_url)
            parser.disallow_all = True
        elif 400 <= response.status_code < 500:
            logger.info("No robots.txt found at %s (%d)", robots_url, response.status_code)
            parser.allow_all = True
        elif response.status_code >= 500:
            logger.warning(
                "robots.txt at %s returned %d; allowing all",
                robots_url,
                response.status_code,
            )
            return cls.allow_all(user_agent)
        else:
            parser.parse(response.text.splitlines())

        return cls(parser, user_agent)

    def can_fetch(self, url: str) -> bool:
        if self._parser is None:
            return True
        return self._parser.can_fetch(self._user_agent, url)
