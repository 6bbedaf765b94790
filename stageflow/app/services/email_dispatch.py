from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib import request
from urllib.error import HTTPError, URLError
from uuid import uuid4

from stageflow.app.settings import EmailRelaySettings

logger = logging.getLogger("stageflow.email")

SIGNATURE_HEADER = "X-Stageflow-Signature-256"


class EmailDispatchError(Exception):
    pass


@dataclass(frozen=True)
class DispatchResult:
    accepted: bool
    message_id: Optional[str] = None
    detail: Optional[str] = None


class EmailDispatcher(Protocol):
    def send(self, template_id: str, candidate_id: str, delay_minutes: int) -> DispatchResult:
        ...


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class LoggingEmailDispatcher:
    """Accepts every send and only logs it; used when no relay is configured."""

    def send(self, template_id: str, candidate_id: str, delay_minutes: int) -> DispatchResult:
        message_id = f"log_{uuid4().hex[:10]}"
        logger.info(
            "email_dispatch_logged template_id=%s candidate_id=%s delay_minutes=%s message_id=%s",
            template_id,
            candidate_id,
            delay_minutes,
            message_id,
        )
        return DispatchResult(accepted=True, message_id=message_id)


class HttpEmailDispatcher:
    def __init__(self, *, relay_url: str, secret: str = "", timeout_seconds: int = 8) -> None:
        self.relay_url = relay_url
        self.secret = secret
        self.timeout_seconds = timeout_seconds

    def send(self, template_id: str, candidate_id: str, delay_minutes: int) -> DispatchResult:
        raw_body = json.dumps(
            {
                "template_id": template_id,
                "candidate_id": candidate_id,
                "delay_minutes": delay_minutes,
            }
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(raw_body, self.secret)
        req = request.Request(self.relay_url, data=raw_body, method="POST", headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except HTTPError as exc:
            raise EmailDispatchError(f"email relay returned http {exc.code}") from exc
        except URLError as exc:
            raise EmailDispatchError("email relay request failed") from exc
        except OSError as exc:
            # Socket timeouts while reading the reply land here.
            raise EmailDispatchError(f"email relay connection error: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise EmailDispatchError("email relay response was not utf-8") from exc

        try:
            decoded = json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise EmailDispatchError("email relay response was not valid json") from exc
        if not isinstance(decoded, dict):
            raise EmailDispatchError("email relay response was not a json object")

        return DispatchResult(
            accepted=bool(decoded.get("accepted")),
            message_id=decoded.get("message_id"),
            detail=decoded.get("detail"),
        )


def build_dispatcher(relay: EmailRelaySettings) -> EmailDispatcher:
    if not relay.enabled:
        return LoggingEmailDispatcher()
    return HttpEmailDispatcher(
        relay_url=relay.url,
        secret=relay.secret,
        timeout_seconds=relay.timeout_seconds,
    )
