from __future__ import annotations

from typing import Any, Dict, List

from findclass.logging import get_logger

logger = get_logger(__name__)

POPULAR_SEARCH_KEYWORDS = (
    "高中数学",
    "雅思英语",
    "钢琴辅导",
    "编程入门",
    "物理补习",
)
MAX_SUGGESTIONS = 5


class SearchService:
    def __init__(self, store) -> None:
        self.store = store

    @staticmethod
    def popular_keywords() -> List[str]:
        return list(POPULAR_SEARCH_KEYWORDS)

    def suggestions(self, query: str, limit: int = MAX_SUGGESTIONS) -> List[Dict[str, Any]]:
        """Course suggestions for a partial query, best rated first."""
        normalized = (query or "").strip().lower()
        if not normalized:
            return []
        limit = max(1, min(int(limit or MAX_SUGGESTIONS), MAX_SUGGESTIONS))
        rows = self.store.search_suggestions(normalized, limit)
        logger.info("search_suggestions", count=len(rows))
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "type": "course",
                "teacher_name": row.get("teacher_name") or "Unknown Teacher",
                "subject": row["category"],
            }
            for row in rows
        ]


__all__ = ["POPULAR_SEARCH_KEYWORDS", "SearchService"]
