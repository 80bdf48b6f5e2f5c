from records.repositories.documents import InMemoryDocumentsRepository, PostgresDocumentsRepository
from records.repositories.nominees import InMemoryNomineesRepository, PostgresNomineesRepository
from records.repositories.todos import InMemoryTodosRepository, PostgresTodosRepository

__all__ = [
    "InMemoryDocumentsRepository",
    "PostgresDocumentsRepository",
    "InMemoryNomineesRepository",
    "PostgresNomineesRepository",
    "InMemoryTodosRepository",
    "PostgresTodosRepository",
]
