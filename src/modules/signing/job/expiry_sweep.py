import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal
from modules.signing.services.signing_request_service import SigningRequestService

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_MINUTES = int(os.getenv("EXPIRY_SWEEP_MINUTES", "15"))


def run_expiry_sweep(session_factory=SessionLocal) -> int:
    with session_factory() as session:
        try:
            return SigningRequestService.expire_overdue(session)
        except SQLAlchemyError:
            # Next run picks up whatever was left
            logger.exception("Expiry sweep failed")
            return 0


def start_expiry_sweep_job() -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    scheduler.add_job(run_expiry_sweep, 'interval', minutes=EXPIRY_SWEEP_MINUTES)
    scheduler.start()
    logger.info("Expiry sweep scheduled every %s minutes", EXPIRY_SWEEP_MINUTES)
    return scheduler
