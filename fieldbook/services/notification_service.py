"""
Notification Service
Turns engine effects into queued email jobs and reminder rows, and sends
the emails from the worker through Resend.
"""

import html
import logging
from typing import Callable, Optional, Protocol

import resend
from arq.connections import ArqRedis

from ..config import EMAIL_FROM_ADDRESS, RESEND_API_KEY
from ..domain.scheduling.repository import ReminderRepository
from ..shared.clock import utcnow
from ..shared.effects import Effect, EffectType

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, recipient: str, subject: str, template: str, variables: dict) -> Optional[str]:
        """Deliver one email; return the provider message id"""
        ...


def render_html(subject: str, variables: dict) -> str:
    """Plain fallback body; branded templates are rendered by the email provider"""
    rows = []
    for key, value in variables.items():
        if value is None:
            continue
        label = html.escape(key.replace("_", " ").capitalize())
        text = html.escape(str(value))
        if key.endswith("_url"):
            text = f'<a href="{text}">{text}</a>'
        rows.append(f"<tr><td><strong>{label}</strong></td><td>{text}</td></tr>")
    return f"<h2>{html.escape(subject)}</h2><table>{''.join(rows)}</table>"


class ResendEmailSender:
    def __init__(self, api_key: Optional[str] = RESEND_API_KEY, from_address: str = EMAIL_FROM_ADDRESS):
        self.api_key = api_key
        self.from_address = from_address

    def send(self, recipient: str, subject: str, template: str, variables: dict) -> Optional[str]:
        if not self.api_key:
            logger.error("❌ No email service configured - RESEND_API_KEY missing")
            raise RuntimeError("Email service not configured")

        resend.api_key = self.api_key
        try:
            logger.info(f"📧 Sending {template} email via Resend to: {recipient}")
            response = resend.Emails.send(
                {
                    "from": self.from_address,
                    "to": [recipient],
                    "subject": subject,
                    "html": render_html(subject, variables),
                    "tags": [{"name": "template", "value": template}],
                }
            )
            logger.info(f"✅ Email sent successfully via Resend: {response}")
            return response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        except Exception as e:
            logger.error(f"❌ Email send error to {recipient}: {e}")
            raise RuntimeError(f"Failed to send email: {str(e)}") from e


class EffectDispatcher:
    """
    Runs the effects of a persisted transition.

    Emails become ``send_email_task`` jobs; reminder effects write to the
    reminders table. A failed enqueue is logged and does not undo the
    transition that produced it.
    """

    def __init__(
        self,
        pool: ArqRedis,
        reminders: ReminderRepository,
        clock: Callable = utcnow,
    ):
        self.pool = pool
        self.reminders = reminders
        self.clock = clock

    async def dispatch(self, effects: list[Effect]) -> dict:
        summary = {"emails": 0, "reminders_scheduled": 0, "reminders_cancelled": 0, "failed": 0}

        for effect in effects:
            if effect.type == EffectType.CANCEL_REMINDER:
                summary["reminders_cancelled"] += self.reminders.cancel_active_for(
                    effect.appointment_id, self.clock()
                )
            elif effect.type == EffectType.SCHEDULE_REMINDER:
                self.reminders.save(effect.payload)
                summary["reminders_scheduled"] += 1
            else:
                try:
                    job = await self.pool.enqueue_job(
                        "send_email_task",
                        effect.recipient,
                        effect.subject,
                        effect.template,
                        effect.variables,
                        effect.appointment_id,
                        effect.quote_id,
                    )
                    logger.info(f"📋 Email job queued: {effect.template} → {effect.recipient} ({job.job_id if job else 'duplicate'})")
                    summary["emails"] += 1
                except Exception as e:
                    logger.error(f"❌ Failed to queue {effect.template} email: {e}")
                    summary["failed"] += 1

        return summary
