from .user import User, UserRole
from .document import Document, DocumentType, DocumentVersion

__all__ = ['User', 'UserRole', 'Document', 'DocumentType', 'DocumentVersion']
