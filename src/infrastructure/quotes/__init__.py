from src.infrastructure.quotes.in_memory import InMemoryQuoteRepository
from src.infrastructure.quotes.postgres import PostgresQuoteRepository

__all__ = ["InMemoryQuoteRepository", "PostgresQuoteRepository"]
