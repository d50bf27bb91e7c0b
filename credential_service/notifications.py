"""Outbound notifications carrying invitation and password reset links.

Every notifier honours the same contract: ``send`` never raises. Delivery
failures are logged here and the triggering operation still succeeds,
because the stored token stays valid and an administrator can resend.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

import sendgrid
from sendgrid.helpers.mail import Content, Email, Mail, To

logger = logging.getLogger(__name__)

INVITATION = "invitation"
PASSWORD_RESET = "password_reset"


class Notifier(Protocol):
    def send(self, to_address: str, template_kind: str, template_params: dict[str, Any]) -> None: ...


def render_template(template_kind: str, params: dict[str, Any]) -> tuple[str, str]:
    """Return ``(subject, plain text body)`` for a notification kind."""
    if template_kind == INVITATION:
        subject = "You're invited to the recipe workspace"
        body = (
            "Hello,\n\n"
            f"You have been invited by {params.get('invited_by', 'an administrator')} to join the recipe workspace.\n\n"
            "Please follow this link to accept your invitation and set your password:\n"
            f"{params['link']}\n\n"
            f"This invitation link will expire in {params.get('expires_in', '7 days')}.\n\n"
            "If you didn't expect this invitation, please contact your administrator.\n"
        )
        return subject, body
    if template_kind == PASSWORD_RESET:
        subject = "Password reset request"
        body = (
            "Hello,\n\n"
            "You have requested to reset your password. Follow this link to choose a new one:\n"
            f"{params['link']}\n\n"
            f"This link will expire in {params.get('expires_in', '24 hours')}.\n\n"
            "If you didn't request a password reset, please ignore this email.\n"
        )
        return subject, body
    raise ValueError(f"Unknown email template: {template_kind}")


class SendGridNotifier:
    """Delivers notifications through the SendGrid web API."""

    def __init__(self, api_key: str, from_address: str) -> None:
        self._client = sendgrid.SendGridAPIClient(api_key=api_key)
        self._from_address = from_address

    def send(self, to_address: str, template_kind: str, template_params: dict[str, Any]) -> None:
        logger.info("sending %s email to %s", template_kind, to_address)
        try:
            subject, body = render_template(template_kind, template_params)
            mail = Mail(Email(self._from_address), To(to_address), subject, Content("text/plain", body))
            response = self._client.send(mail)
        except Exception:
            logger.exception("failed to send %s email to %s", template_kind, to_address)
            return
        if response.status_code not in (200, 201, 202):
            logger.error(
                "sendgrid rejected %s email to %s with status %s",
                template_kind,
                to_address,
                response.status_code,
            )
            return
        logger.info("%s email sent to %s", template_kind, to_address)


class LoggingNotifier:
    """Development notifier that only logs the link it would have mailed."""

    def send(self, to_address: str, template_kind: str, template_params: dict[str, Any]) -> None:
        logger.info("%s email for %s not delivered (no mail transport configured)", template_kind, to_address)
        logger.debug("%s link for %s: %s", template_kind, to_address, template_params.get("link"))


class BackgroundNotifier:
    """Hands notifications to a worker pool so callers never wait on delivery."""

    def __init__(self, delegate: Notifier, max_workers: int = 2) -> None:
        self._delegate = delegate
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notifier")

    def send(self, to_address: str, template_kind: str, template_params: dict[str, Any]) -> None:
        try:
            future = self._executor.submit(self._delegate.send, to_address, template_kind, template_params)
        except RuntimeError:
            logger.error("notifier is shut down; dropped %s email to %s", template_kind, to_address)
            return
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("notification worker failed: %s", exc)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
