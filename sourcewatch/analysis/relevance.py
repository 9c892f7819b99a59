"""
Content relevance analysis: does a fetched search page actually answer a keyword?

The analyzer never raises for bad input. A non-HTML body, an empty body or a parse
failure produces ``RelevanceResult.failed()`` (all zeros, ``parse_failed=True``),
which callers treat exactly like "no content match".
"""

from __future__ import annotations

import re
from typing import Optional

import structlog
from bs4 import BeautifulSoup

from sourcewatch.models import ContentQuality, RelevanceResult

logger = structlog.get_logger()

HAS_TARGET_CONTENT_THRESHOLD = 0.3

# Structural patterns for repeated result blocks; the best single pattern wins
RESULT_SELECTORS = (
    "div[class*=result]",
    "[class*=search-result]",
    "div[class*=card]",
    "div[class*=item]",
    "li[class*=item]",
    "article",
    "div[class*=movie-box]",
    "div[class*=video]",
    "tr[class*=result]",
)

# Textual "N results" indicators: English, Chinese, Japanese
_COUNT_PATTERNS = (
    re.compile(r"(\d[\d,]*)\s+(?:results?|matches|items|videos|torrents)\b", re.I),
    re.compile(r"找到\s*(\d[\d,]*)"),
    re.compile(r"共\s*(\d[\d,]*)\s*(?:条|个|部|项|件)?"),
    re.compile(r"(\d[\d,]*)\s*件"),
)

_NO_RESULTS_PATTERNS = (
    re.compile(r"no\s+(?:\w+\s+)?results?", re.I),
    re.compile(r"nothing\s+(?:was\s+)?found", re.I),
    re.compile(r"not\s+found", re.I),
    re.compile(r"没有.{0,10}结果"),
    re.compile(r"未找到"),
    re.compile(r"暂无.{0,10}内容"),
)

_KEYWORD_SEPARATORS = re.compile(r"[-_\s]+")
_CODE_KEYWORD = re.compile(r"^([a-z]+)-?(\d+)$", re.I)
_NEXT_PAGE = re.compile(r"^\s*(?:next|下一页|次へ|»|›)\s*$", re.I)
_HTML_TYPES = ("html", "xml")
_MIN_MEDIA = 3


def keyword_pattern(keyword: str) -> re.Pattern[str]:
    """
    Case-insensitive pattern for ``keyword``.

    Code-style keywords (letters, optional hyphen, digits, e.g. ``MIMK-186``) also
    match when written without the hyphen or with one, so ``mimk186`` counts.
    """
    code = _CODE_KEYWORD.match(keyword.strip())
    if code:
        letters, digits = code.groups()
        return re.compile(re.escape(letters) + r"-?" + re.escape(digits), re.I)
    return re.compile(re.escape(keyword.strip()), re.I)


def count_partial_matches(body: str, keyword: str) -> int:
    """Number of keyword parts (split on - _ and spaces, longer than 2 chars) found in the body."""
    keyword = keyword.strip()
    if len(keyword) <= 3:
        return 0
    lowered = body.lower()
    parts = [p.lower() for p in _KEYWORD_SEPARATORS.split(keyword) if len(p) > 2]
    return sum(1 for p in parts if p in lowered)


def _parse_count(raw: str) -> int:
    try:
        return int(raw.replace(",", ""))
    except ValueError:
        return 0


class ContentAnalyzer:
    """Scores an HTML search-results page against a target keyword."""

    def analyze(
        self,
        body: str,
        keyword: str,
        content_type: Optional[str] = None,
    ) -> RelevanceResult:
        if content_type and not any(t in content_type.lower() for t in _HTML_TYPES):
            logger.debug("content_not_html", content_type=content_type)
            return RelevanceResult.failed()
        if not body or not keyword or not keyword.strip() or "<" not in body:
            return RelevanceResult.failed()

        try:
            soup = BeautifulSoup(body, "html.parser")
            if soup.find(True) is None:
                return RelevanceResult.failed()
            return self._score(soup, body, keyword)
        except Exception as e:
            logger.debug("content_parse_failed", error=str(e)[:200])
            return RelevanceResult.failed()

    def _score(self, soup: BeautifulSoup, body: str, keyword: str) -> RelevanceResult:
        pattern = keyword_pattern(keyword)
        direct_matches = len(pattern.findall(body.lower()))
        keyword_found = direct_matches > 0
        partial_matches = 0 if keyword_found else count_partial_matches(body, keyword)

        title_text = soup.title.get_text(" ", strip=True) if soup.title else ""
        title_match = bool(title_text) and bool(pattern.search(title_text))

        text = soup.get_text(" ", strip=True)
        no_results = any(p.search(text) for p in _NO_RESULTS_PATTERNS)

        structural_count = self._structural_count(soup)
        estimated = structural_count
        if estimated == 0 and not no_results:
            estimated = self._text_count(text)
        has_search_results = structural_count >= 2

        has_navigation = self._has_navigation(soup)
        has_pagination = self._has_pagination(soup)
        has_media = len(soup.find_all(["img", "video"])) >= _MIN_MEDIA

        match_score = (
            0.4 * keyword_found
            + 0.3 * title_match
            + 0.2 * (estimated > 0)
            + 0.1 * has_search_results
        )
        match_score = round(min(1.0, max(0.0, match_score)), 6)

        points = (
            2 * keyword_found
            + 2 * title_match
            + (estimated > 0)
            + has_search_results
            + (has_navigation or has_pagination or has_media)
        )

        return RelevanceResult(
            has_target_content=match_score > HAS_TARGET_CONTENT_THRESHOLD,
            match_score=match_score,
            keyword_found=keyword_found,
            direct_matches=direct_matches,
            partial_match=partial_matches > 0,
            partial_matches=partial_matches,
            title_match=title_match,
            estimated_result_count=estimated,
            has_search_results=has_search_results,
            has_navigation=has_navigation,
            has_pagination=has_pagination,
            has_media=has_media,
            no_results_indicated=no_results,
            quality=classify_quality(points),
            quality_points=points,
        )

    @staticmethod
    def _structural_count(soup: BeautifulSoup) -> int:
        """
        Largest count of innermost elements matched by any single result selector.

        A match that wraps other matches (a "results" container around "result"
        cards, or a card around its "result-title") is not a result itself.
        """
        best = 0
        for selector in RESULT_SELECTORS:
            matched = soup.select(selector)
            if not matched:
                continue
            ids = {id(el) for el in matched}
            wrappers: set[int] = set()
            for el in matched:
                for parent in el.parents:
                    if id(parent) in ids:
                        wrappers.add(id(parent))
            best = max(best, len(matched) - len(wrappers))
        return best

    @staticmethod
    def _text_count(text: str) -> int:
        for pattern in _COUNT_PATTERNS:
            m = pattern.search(text)
            if m:
                count = _parse_count(m.group(1))
                if count > 0:
                    return count
        return 0

    @staticmethod
    def _has_navigation(soup: BeautifulSoup) -> bool:
        if soup.find("nav") or soup.find(attrs={"role": "navigation"}):
            return True
        return bool(soup.select("[class*=nav], [class*=menu]"))

    @staticmethod
    def _has_pagination(soup: BeautifulSoup) -> bool:
        if soup.select("[class*=pag]") or soup.find(attrs={"rel": "next"}):
            return True
        return soup.find("a", string=_NEXT_PAGE) is not None


def classify_quality(points: int) -> ContentQuality:
    """Map the 0..7 signal point-sum to a content quality band."""
    if points >= 6:
        return ContentQuality.EXCELLENT
    if points >= 4:
        return ContentQuality.GOOD
    if points >= 2:
        return ContentQuality.MODERATE
    return ContentQuality.POOR
