# modules/notifications/services/notification_service.py
import logging
import os
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlencode

from modules.notifications.models.notification import Notification
from modules.notifications.repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)

SIGNING_LINK_BASE_URL = os.getenv("SIGNING_LINK_BASE_URL", "http://localhost:3000/sign")


def build_signing_link(document_id: int, raw_token: str) -> str:
    return f"{SIGNING_LINK_BASE_URL.rstrip('/')}/{document_id}?{urlencode({'token': raw_token})}"


class NotificationTemplate:
    def __init__(self, recipient_email: str, user_id: Optional[int], title: str, message: str,
                 link: Optional[str] = None):
        self.recipient_email = recipient_email
        self.user_id = user_id
        self.title = title
        self.message = message
        self.link = link

    def to_dict(self):
        return {
            'recipient_email': self.recipient_email,
            'user_id': self.user_id,
            'title': self.title,
            'message': self.message,
            'link': self.link
        }

class SigningLinkNotification(NotificationTemplate):
    def __init__(self, recipient_email: str, user_id: Optional[int], signer_name: str,
                 document_name: str, link: str, expires_at: datetime,
                 note: Optional[str] = None):
        title = "Document ready for your signature"
        message = (
            f"Hello {signer_name}, the document '{document_name}' is waiting for your signature. "
            f"This link expires on {expires_at:%Y-%m-%d %H:%M} UTC."
        )
        if note:
            message = f"{message}\n\n{note}"
        super().__init__(recipient_email, user_id, title, message, link)

class SigningReminderNotification(NotificationTemplate):
    def __init__(self, recipient_email: str, user_id: Optional[int], signer_name: str,
                 document_name: str, due_date: Optional[datetime], link: Optional[str] = None):
        title = "Reminder: signature pending"
        message = f"Hello {signer_name}, the document '{document_name}' still needs your signature."
        if due_date:
            message = f"{message} It is due on {due_date:%Y-%m-%d %H:%M} UTC."
        if not link:
            message = f"{message} Please use the signing link you received earlier."
        super().__init__(recipient_email, user_id, title, message, link)

class SigningStatusNotification(NotificationTemplate):
    def __init__(self, recipient_email: str, user_id: Optional[int], document_name: str,
                 new_status: str, detail: Optional[str] = None):
        readable_statuses = {
            'FULLY_SIGNED': 'Fully signed',
            'CANCELLED': 'Cancelled',
            'EXPIRED': 'Expired',
            'PARTIALLY_SIGNED': 'Partially signed'
        }
        title = "Signature request update"
        status_human = readable_statuses.get(new_status, new_status)
        message = f"The signature request for '{document_name}' is now: '{status_human}'."
        if detail:
            message = f"{message} {detail}"
        super().__init__(recipient_email, user_id, title, message)

class NotificationService:
    def __init__(self, repository: NotificationRepository):
        self.notification_repository = repository

    def _save(self, template: NotificationTemplate) -> Notification:
        notif = Notification(**template.to_dict())
        return self.notification_repository.save(notif)

    def deliver_signing_link(
        self,
        recipient_email: str,
        user_id: Optional[int],
        signer_name: str,
        document_id: int,
        document_name: str,
        raw_token: str,
        expires_at: datetime,
        note: Optional[str] = None
    ) -> Notification:
        link = build_signing_link(document_id, raw_token)
        template = SigningLinkNotification(
            recipient_email, user_id, signer_name, document_name, link, expires_at, note
        )
        notif = self._save(template)
        # The link carries the secret, never log it
        logger.info("Signing link for document %s delivered to %s", document_id, recipient_email)
        return notif

    def deliver_signing_reminder(
        self,
        recipient_email: str,
        user_id: Optional[int],
        signer_name: str,
        document_id: int,
        document_name: str,
        due_date: Optional[datetime],
        raw_token: Optional[str] = None
    ) -> Notification:
        link = build_signing_link(document_id, raw_token) if raw_token else None
        template = SigningReminderNotification(
            recipient_email, user_id, signer_name, document_name, due_date, link
        )
        notif = self._save(template)
        logger.info("Signing reminder for document %s delivered to %s", document_id, recipient_email)
        return notif

    def create_signing_status_notification(
        self,
        recipient_email: str,
        user_id: Optional[int],
        document_name: str,
        new_status: str,
        detail: Optional[str] = None
    ) -> Notification:
        template = SigningStatusNotification(recipient_email, user_id, document_name, new_status, detail)
        return self._save(template)

    def get_notifications(self, user_id: int) -> List[Notification]:
        return self.notification_repository.find_by_user_id(user_id)

    def get_notifications_for_email(self, email: str) -> List[Notification]:
        return self.notification_repository.find_by_email(email)

    def mark_as_read(self, notification_id: int, user_id: int) -> Optional[Notification]:
        notif = self.notification_repository.get(notification_id)
        if not notif or notif.user_id != user_id:
            return None
        return self.notification_repository.update(notification_id, {'read': True})
