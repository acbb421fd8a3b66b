# create_tables.py
import logging

from database import engine, Base
# Every model has to be imported so it registers with Base
from modules.documents.models.user import User
from modules.documents.models.document import Document, DocumentVersion
from modules.notifications.models.notification import Notification
from modules.signing.models import SignatureEvent, Signer, SignerToken, SigningRequest

logger = logging.getLogger(__name__)


def create_tables():
    """Creates every table that does not exist yet."""
    logger.info("Tables: %s", list(Base.metadata.tables.keys()))
    Base.metadata.create_all(bind=engine)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_tables()
