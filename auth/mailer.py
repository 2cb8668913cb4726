"""
auth/mailer.py -- Outbound email seam.

Delivery is an external collaborator. The auth core only hands it a
recipient, a template kind and a short-lived token; whatever transport the
deployment uses implements the Mailer protocol.

LoggingMailer is the default: it records that a message would have been sent
without writing the token itself to the log.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("gatekeeper.auth.mailer")


class Mailer(Protocol):
    def send_verification_email(self, to: str, name: str | None, token: str) -> None: ...

    def send_welcome_email(self, to: str, name: str | None) -> None: ...

    def send_password_reset_email(self, to: str, name: str | None, token: str) -> None: ...


class LoggingMailer:
    def send_verification_email(self, to: str, name: str | None, token: str) -> None:
        logger.info("Verification email queued for %s", to)

    def send_welcome_email(self, to: str, name: str | None) -> None:
        logger.info("Welcome email queued for %s", to)

    def send_password_reset_email(self, to: str, name: str | None, token: str) -> None:
        logger.info("Password reset email queued for %s", to)
