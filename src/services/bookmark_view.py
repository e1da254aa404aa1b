"""Filter state and the projection derived from it."""
from schemas.bookmark import BookmarkRead
from services.projector import (
    ALL_CATEGORIES,
    SortKey,
    available_categories,
    parse_sort_key,
    project,
)
from services.reconciliation import BookmarkCollection


class BookmarkView:
    """
    Holds search/category/sort state and keeps the projection current.

    The projection is recomputed whenever the collection is replaced or the
    filter state changes; it is always derived, never edited in place.
    """

    def __init__(self, collection: BookmarkCollection) -> None:
        self._collection = collection
        self._search_term = ""
        self._category_filter = ALL_CATEGORIES
        self._sort_key = SortKey.DATE
        self._visible: list[BookmarkRead] = []
        self._categories: list[str] = []
        self._unsubscribe = collection.subscribe(lambda _items: self._recompute())
        self._recompute()

    @property
    def visible(self) -> list[BookmarkRead]:
        """Bookmarks to show, filtered and sorted."""
        return list(self._visible)

    @property
    def categories(self) -> list[str]:
        """Options for the category filter."""
        return list(self._categories)

    @property
    def search_term(self) -> str:
        return self._search_term

    @property
    def category_filter(self) -> str:
        return self._category_filter

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def set_search(self, search_term: str) -> None:
        self._search_term = search_term
        self._recompute()

    def set_category(self, category_filter: str) -> None:
        self._category_filter = category_filter or ALL_CATEGORIES
        self._recompute()

    def set_sort(self, sort_key: str | SortKey) -> None:
        self._sort_key = parse_sort_key(sort_key)
        self._recompute()

    def close(self) -> None:
        """Stop following the collection."""
        self._unsubscribe()

    def _recompute(self) -> None:
        items = self._collection.items
        self._visible = project(items, self._search_term, self._category_filter, self._sort_key)
        self._categories = available_categories(items)
