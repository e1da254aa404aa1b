"""Pure filtering and sorting of the bookmark collection for display."""
import unicodedata
from collections.abc import Sequence
from enum import StrEnum

from schemas.bookmark import BookmarkRead
from services.exceptions import ValidationError

ALL_CATEGORIES = "all"
DEFAULT_CATEGORY = "general"


class SortKey(StrEnum):
    DATE = "date"
    TITLE = "title"
    FAVORITES = "favorites"


def parse_sort_key(value: str | SortKey) -> SortKey:
    """Convert a sort option to SortKey, rejecting unknown options."""
    try:
        return SortKey(value)
    except ValueError as e:
        options = ", ".join(key.value for key in SortKey)
        raise ValidationError(f"Unknown sort '{value}'. Use one of: {options}", field="sort") from e


def title_sort_key(title: str) -> tuple[str, str]:
    """
    Collation key approximating a locale-aware, case-insensitive comparison.

    Primary: accent-stripped casefolded text, so "apple" < "Éclair" < "Zebra".
    Secondary: swapped case, so "apple" sorts before "Apple" on an otherwise tie.
    """
    decomposed = unicodedata.normalize("NFKD", title)
    base = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return base.casefold(), title.swapcase()


def matches_search(bookmark: BookmarkRead, search_term: str) -> bool:
    """Case-insensitive substring match against title or url."""
    needle = search_term.casefold()
    return needle in bookmark.title.casefold() or needle in bookmark.url.casefold()


def matches_category(bookmark: BookmarkRead, category_filter: str) -> bool:
    return category_filter == ALL_CATEGORIES or bookmark.category == category_filter


def project(
    collection: Sequence[BookmarkRead],
    search_term: str = "",
    category_filter: str = ALL_CATEGORIES,
    sort_key: str | SortKey = SortKey.DATE,
) -> list[BookmarkRead]:
    """
    Filter and order a collection for display.

    Returns a new list; the input is never modified. All sorts are stable, so
    "favorites" keeps the input order (latest first, as the collection is stored)
    within the favorite and non-favorite groups.

    Raises:
        ValidationError: If sort_key is not a known option.
    """
    key = parse_sort_key(sort_key)
    visible = [
        b for b in collection
        if matches_search(b, search_term) and matches_category(b, category_filter)
    ]
    if key is SortKey.TITLE:
        return sorted(visible, key=lambda b: title_sort_key(b.title))
    if key is SortKey.FAVORITES:
        return sorted(visible, key=lambda b: not b.is_favorite)
    return sorted(visible, key=lambda b: b.created_at, reverse=True)


def available_categories(collection: Sequence[BookmarkRead]) -> list[str]:
    """Category filter options: "all", "general", then each other category once."""
    categories = [ALL_CATEGORIES, DEFAULT_CATEGORY]
    for bookmark in collection:
        if bookmark.category not in categories:
            categories.append(bookmark.category)
    return categories
