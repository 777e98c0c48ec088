"""Substring search over citation text and annotations, with result navigation."""

import logging
from collections.abc import Iterable

from citelink.models import CitationNode
from citelink.search.schemas import SearchMatch, SearchOptions, SearchResult

logger = logging.getLogger(__name__)


class SearchService:
    """Holds the current query, its ranked results, and a navigation cursor."""

    def __init__(self) -> None:
        self._results: list[SearchResult] = []
        self._index = 0
        self._query = ""
        self._options = SearchOptions()

    @property
    def query(self) -> str:
        return self._query

    @property
    def options(self) -> SearchOptions:
        return self._options.model_copy()

    def update_options(self, **changes: bool) -> SearchOptions:
        self._options = self._options.model_copy(update=changes)
        return self.options

    def perform_search(
        self,
        query: str,
        nodes: Iterable[CitationNode],
        options: SearchOptions | dict | None = None,
    ) -> list[SearchResult]:
        """Search non-deleted nodes. Highlight matches rank before annotation-only ones."""
        if isinstance(options, SearchOptions):
            self._options = options.model_copy()
        elif options:
            self._options = self._options.model_copy(update=options)

        self._query = query.strip().lower()
        if not self._query:
            self.clear_search_results()
            return []

        results: list[SearchResult] = []
        for node in nodes:
            if node.deleted:
                continue
            matches = self._find_matches(node)
            if matches:
                results.append(SearchResult(
                    node_id=node.id,
                    matches=matches,
                    priority=1 if any(m.type == "highlight" for m in matches) else 2,
                ))

        # sort() is stable: ties keep tree order
        results.sort(key=lambda r: r.priority)
        self._results = results
        self._index = 0
        logger.debug("Search %r matched %d nodes", self._query, len(results))
        return list(results)

    def _find_matches(self, node: CitationNode) -> list[SearchMatch]:
        matches: list[SearchMatch] = []
        if (
            self._options.search_highlighted
            and node.text
            and self._query in node.text.lower()
        ):
            matches.append(SearchMatch(type="highlight", text=node.text, node_id=node.id))

        if self._options.search_annotations:
            for i, annotation in enumerate(node.annotations):
                if self._query in annotation.text.lower():
                    matches.append(SearchMatch(
                        type="annotation",
                        text=annotation.text,
                        node_id=node.id,
                        annotation_index=i,
                    ))
        return matches

    # -- Navigation --

    def navigate_to_next(self) -> SearchResult | None:
        if not self._results:
            return None
        self._index = (self._index + 1) % len(self._results)
        return self.get_current_result()

    def navigate_to_previous(self) -> SearchResult | None:
        if not self._results:
            return None
        self._index = (self._index - 1) % len(self._results)
        return self.get_current_result()

    def get_current_result(self) -> SearchResult | None:
        if not self._results:
            return None
        return self._results[self._index]

    def get_search_counter(self) -> str:
        if not self._results:
            return "0 of 0"
        return f"{self._index + 1} of {len(self._results)}"

    def clear_search_results(self) -> None:
        self._results = []
        self._index = 0
        self._query = ""

    def has_results(self) -> bool:
        return bool(self._results)

    def get_matching_node_ids(self) -> set[int]:
        return {r.node_id for r in self._results}

    @property
    def results(self) -> list[SearchResult]:
        return list(self._results)
