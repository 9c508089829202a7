"""Simple search utilities for the book library.

This module implements a naïve keyword search over the books table. It
scans the candidate books, scores them based on the presence of query
terms in different fields, and returns the matching books ordered by
relevance. Without a query the listing order of :func:`db.list_books`
is kept.
"""

from typing import Any, Dict, List, Optional

from . import db

FIELD_WEIGHTS = (
    ("title", 4.0),
    ("author", 2.0),
    ("description", 1.0),
)


def score_book(book: Dict[str, Any], keywords: List[str]) -> float:
    """Compute a relevance score from keyword occurrences."""
    score = 0.0
    for field, weight in FIELD_WEIGHTS:
        value = (book.get(field) or "").lower()
        for kw in keywords:
            if kw in value:
                score += weight
    return score


def search_books(query: str = "", *, public_only: bool = True, user_id: Optional[str] = None,
                 language: Optional[str] = None, sort: str = "recent") -> List[Dict[str, Any]]:
    """Search books by simple keyword matching.

    Args:
        query: Space-separated keywords to search for.
        public_only: Restrict the search to public books.
        user_id: Restrict the search to books uploaded by this user.
        language: Restrict the search to one language.
        sort: Listing order used when ``query`` is empty and to break ties.

    Returns:
        Book rows sorted by descending relevance score.
    """
    books = db.list_books(public_only=public_only, user_id=user_id, language=language, sort=sort)
    query = (query or "").strip().lower()
    if not query:
        return books

    keywords = query.split()
    results = []
    for position, book in enumerate(books):
        score = score_book(book, keywords)
        # Skip books with zero score.
        if score == 0.0:
            continue
        results.append((score, position, book))

    # Sort by score descending, keeping the listing order for ties.
    results.sort(key=lambda item: (-item[0], item[1]))
    return [book for _, _, book in results]
