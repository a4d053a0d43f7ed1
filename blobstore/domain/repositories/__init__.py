from .batch_repository import BatchRepository

__all__ = [
    "BatchRepository",
]
