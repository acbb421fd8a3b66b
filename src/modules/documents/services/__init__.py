from .document_service import DocumentService

__all__ = ['DocumentService']
