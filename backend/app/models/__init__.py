from app.models.models import Base, Document

__all__ = [
    "Base",
    "Document",
]
