"""SMTP dispatcher — email via mail submission.

Learn: The message ID doubles as the email's Message-Id header, so a
recipient (or a bounce) can always be correlated back to the queue row.
Replies are classified by SMTP code: 4xx means "try later" and is
retryable, 5xx is a hard rejection.
"""

import uuid
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Optional

import aiosmtplib
import structlog

from herald.config import SMTPConfig
from herald.notifications.dispatch.base import Dispatcher
from herald.notifications.exceptions import DispatchError
from herald.notifications.types import NotificationMethod, Payload

logger = structlog.get_logger()


def render_body(payload: Payload) -> str:
    """Plain-text body: the title, then one line per label."""
    lines = [payload.title or payload.notification_name, ""]
    lines.extend(f"{key}: {value}" for key, value in payload.labels.items())
    return "\n".join(lines).rstrip() + "\n"


class SMTPDispatcher(Dispatcher):
    """Sends notifications as plain-text email using aiosmtplib."""

    def __init__(self, config: SMTPConfig, *, name: Optional[str] = None):
        self.config = config
        self._name = name or NotificationMethod.SMTP.value

    @property
    def name(self) -> str:
        return self._name

    def build_message(self, message_id: uuid.UUID, payload: Payload) -> MIMEText:
        msg = MIMEText(render_body(payload), "plain", "utf-8")
        msg["From"] = self.config.from_address
        msg["To"] = payload.recipient
        msg["Subject"] = payload.title or payload.notification_name
        msg["Date"] = formatdate(localtime=False)
        msg["Message-Id"] = str(message_id)
        return msg

    async def send(self, message_id: uuid.UUID, payload: Payload) -> None:
        if not self.config.from_address:
            raise DispatchError("smtp from_address is not configured", retryable=False)
        if not self.config.host:
            raise DispatchError("smtp host is not configured", retryable=False)

        msg = self.build_message(message_id, payload)
        log = logger.bind(msg_id=str(message_id), smtp_host=self.config.host)

        try:
            await aiosmtplib.send(
                msg,
                sender=self.config.from_address,
                recipients=[payload.recipient],
                hostname=self.config.host,
                port=self.config.port,
                local_hostname=self.config.hello or None,
                username=self.config.username or None,
                password=self.config.password or None,
                use_tls=self.config.use_tls,
                start_tls=self.config.start_tls,
                timeout=self.config.timeout,
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise DispatchError(
                f"recipient refused: {payload.recipient}", retryable=False
            ) from e
        except aiosmtplib.SMTPResponseException as e:
            # 4xx = transient (greylisting, mailbox busy), 5xx = permanent
            raise DispatchError(
                f"smtp {e.code}: {e.message}", retryable=400 <= e.code < 500
            ) from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise DispatchError(f"smtp delivery failed: {e}", retryable=True) from e

        log.info("smtp.sent", to=payload.recipient)
