"""Database models and repository"""

from hedgegrid.database.manager import DatabaseManager, Page
from hedgegrid.database.models import Base, GridStrategy, GridTradeHistory

__all__ = [
    "Base",
    "DatabaseManager",
    "GridStrategy",
    "GridTradeHistory",
    "Page",
]
