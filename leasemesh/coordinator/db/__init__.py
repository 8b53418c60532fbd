from db.repository import JobRepository, get_repository, init_repository

__all__ = ["JobRepository", "get_repository", "init_repository"]
