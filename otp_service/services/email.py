from __future__ import annotations

import base64
import http.client
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from otp_service.config import Settings, settings
from otp_service.schemas.email import EmailSendError

LOGGER = logging.getLogger(__name__)

EMAILJS_SEND_ENDPOINT = "https://api.emailjs.com/api/v1.0/email/send"
GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GMAIL_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"


class EmailDispatcher(Protocol):
    def send(self, template_id: str, params: dict[str, str]) -> None: ...


class EmailJsDispatcher:
    """Sends templated messages through the EmailJS REST API."""

    def __init__(self, config: Settings) -> None:
        self._config = config

    def send(self, template_id: str, params: dict[str, str]) -> None:
        service_id = self._config.emailjs_service_id
        public_key = self._config.emailjs_public_key
        if not service_id or not public_key:
            raise EmailSendError("EmailJS is not configured")
        if not template_id:
            raise EmailSendError("Email template is not configured")

        body: dict[str, Any] = {
            "service_id": service_id,
            "template_id": template_id,
            "user_id": public_key,
            "template_params": params,
        }
        if self._config.emailjs_private_key:
            body["accessToken"] = self._config.emailjs_private_key

        request = Request(
            EMAILJS_SEND_ENDPOINT,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        _post(request, self._config.email_timeout_seconds, "EmailJS")


@dataclass
class _AccessToken:
    value: str
    expires_at: datetime

    def usable(self) -> bool:
        return self.expires_at > datetime.now(timezone.utc) + timedelta(minutes=1)


class GmailDispatcher:
    """Renders the OTP message locally and sends it with the Gmail API.

    The access token is minted from the configured OAuth refresh token and
    reused until it is about to expire.
    """

    def __init__(self, config: Settings) -> None:
        self._config = config
        self._token: _AccessToken | None = None

    def send(self, template_id: str, params: dict[str, str]) -> None:
        sender = self._config.otp_email_sender
        recipient = params.get("to_email", "")
        if not sender:
            raise EmailSendError("OTP email sender is not configured")
        if not recipient:
            raise EmailSendError("Email recipient is missing")

        raw_message = _build_raw_message(
            sender, recipient, self._config.otp_email_subject, _render_otp_body(params)
        )
        request = Request(
            GMAIL_SEND_ENDPOINT,
            data=json.dumps({"raw": raw_message}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._access_token()}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        _post(request, self._config.email_timeout_seconds, "Gmail API")

    def _access_token(self) -> str:
        if self._token is not None and self._token.usable():
            return self._token.value

        config = self._config
        if not (config.gmail_client_id and config.gmail_client_secret):
            raise EmailSendError("Gmail client credentials are missing")
        if not config.gmail_refresh_token:
            raise EmailSendError("Gmail refresh token is missing")

        payload = urlencode(
            {
                "client_id": config.gmail_client_id,
                "client_secret": config.gmail_client_secret,
                "refresh_token": config.gmail_refresh_token,
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        request = Request(GMAIL_TOKEN_ENDPOINT, data=payload, method="POST")
        reply = _post(request, config.email_timeout_seconds, "Gmail token endpoint")
        try:
            data = json.loads(reply)
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise EmailSendError("Gmail token refresh returned no access token") from exc

        self._token = _AccessToken(
            value=access_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
        return access_token


def build_dispatcher(config: Settings = settings) -> EmailDispatcher:
    if config.email_backend == "gmail":
        return GmailDispatcher(config)
    if config.email_backend == "emailjs":
        return EmailJsDispatcher(config)
    raise ValueError(f"Unknown EMAIL_BACKEND '{config.email_backend}'")


def _post(request: Request, timeout: float, service: str) -> str:
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.read().decode("utf-8")
    except HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        LOGGER.error("%s error status=%s response=%s", service, exc.code, error_body)
        raise EmailSendError(f"{service} rejected the request") from exc
    except (URLError, TimeoutError) as exc:
        LOGGER.error("%s unreachable: %s", service, exc)
        raise EmailSendError(f"Failed to reach {service}") from exc
    except (OSError, http.client.HTTPException, ValueError) as exc:
        # Dropped connections and truncated or undecodable replies.
        LOGGER.error("%s request failed: %r", service, exc)
        raise EmailSendError(f"{service} request failed") from exc


def _render_otp_body(params: dict[str, str]) -> str:
    return (
        f"Your verification code is {params.get('otp_code', '')}.\n\n"
        f"It expires in {params.get('expires_in', '')}.\n"
        f"Requested for {params.get('purpose', '')}.\n\n"
        "If you did not request this code, you can ignore this email."
    )


def _build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    lines = [
        f"From: {sender}",
        f"To: {recipient}",
        f"Subject: {subject}",
        "MIME-Version: 1.0",
        "Content-Type: text/plain; charset=utf-8",
        "",
        body,
    ]
    message = "\r\n".join(lines)
    # Gmail API expects base64url-encoded RFC 2822 content.
    return base64.urlsafe_b64encode(message.encode("utf-8")).decode("ascii")
