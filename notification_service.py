# notification_service.py
# Investor notifications: AWS SES email sink and a log-only sink

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import settings

log = logging.getLogger(__name__)

DISTRIBUTION_TYPE_LABELS = {
    "rental_income": "Rental Income",
    "capital_gain": "Capital Gain",
    "exit_proceeds": "Exit Proceeds",
}


class NotificationSink(Protocol):
    async def notify(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        ...


def _dollars(minor_units: int) -> str:
    return f"${minor_units / 100:,.2f}"


def render_notification(event: str, payload: Dict[str, Any]) -> Tuple[str, str, str]:
    """Build (subject, html_body, text_body) for an investor event"""
    if event == "income_distribution_processed":
        label = DISTRIBUTION_TYPE_LABELS.get(payload.get("distribution_type"), "Distribution")
        amount = _dollars(int(payload.get("amount", 0)))
        property_name = payload.get("property_name") or f"property #{payload.get('property_id')}"
        date = payload.get("distribution_date", "")
        subject = f"{label} payment of {amount} from {property_name}"
        text = f"A {label.lower()} payment of {amount} from {property_name} dated {date} has been processed."
    elif event == "investment_completed":
        shares = payload.get("number_of_shares")
        property_name = payload.get("property_name") or f"property #{payload.get('property_id')}"
        subject = f"Your investment in {property_name} is complete"
        text = f"You now own {shares} shares of {property_name}. Your ownership certificate is available in your portfolio."
    else:
        subject = event.replace("_", " ").capitalize()
        text = ", ".join(f"{key}: {value}" for key, value in sorted(payload.items()))

    html = f"<html><body><p>{text}</p></body></html>"
    return subject, html, text


class LoggingNotificationSink:
    """Writes notifications to the application log only"""

    async def notify(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        subject, _, text = render_notification(event, payload)
        log.info(f"NOTIFY user={user_id} event={event} subject={subject!r} body={text!r}")


class SESNotificationSink:
    """
    Sends investor notifications as transactional email through AWS SES.

    Users live outside this service, so the recipient address comes from
    `resolve_email` (or payload["email"] when the caller already has it).
    """

    def __init__(self, resolve_email: Optional[Callable[[int], Awaitable[Optional[str]]]] = None):
        self.ses_client = boto3.client(
            'ses',
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY
        )
        self.sender_email = settings.SES_SENDER_EMAIL
        self.sender_name = settings.SES_SENDER_NAME
        self.resolve_email = resolve_email

    async def notify(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        to_email = payload.get("email")
        if not to_email and self.resolve_email is not None:
            to_email = await self.resolve_email(user_id)
        if not to_email:
            log.warning(f"No email address for user {user_id}; {event} notification skipped")
            return

        subject, html_body, text_body = render_notification(event, payload)
        try:
            response = self.ses_client.send_email(
                Source=f'{self.sender_name} <{self.sender_email}>',
                Destination={'ToAddresses': [to_email]},
                Message={
                    'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                    'Body': {
                        'Html': {'Data': html_body, 'Charset': 'UTF-8'},
                        'Text': {'Data': text_body, 'Charset': 'UTF-8'},
                    },
                },
                Tags=[{'Name': 'event', 'Value': event}],
            )
            log.info(f"Email sent to user {user_id} for {event}. MessageId: {response['MessageId']}")
        except (ClientError, BotoCoreError) as e:
            log.error(f"Error sending {event} email to user {user_id}: {e}")
            raise


def build_notification_sink() -> NotificationSink:
    if settings.NOTIFICATIONS_ENABLED:
        return SESNotificationSink()
    return LoggingNotificationSink()
