"""Outbound transactional email through Resend, sent off the request thread."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Dict, List, Optional

import resend

from gule.config import Config
from gule.observability import increment_counter
from gule.validation import sanitize_text


def build_order_confirmation(order_number: str, recipient: str, items: List[Dict[str, Any]], total: Decimal) -> Dict[str, Any]:
    rows = "".join(
        f"<tr><td>{sanitize_text(str(item['name']))}</td><td>{item['quantity']}</td><td>{item['line_total']}</td></tr>"
        for item in items
    )
    return {
        "from": Config.EMAIL_SENDER,
        "to": [recipient],
        "subject": f"Order {order_number} confirmed",
        "html": (
            f"<p>Thank you for your order <strong>{order_number}</strong>.</p>"
            f"<table><tr><th>Item</th><th>Qty</th><th>Total</th></tr>{rows}</table>"
            f"<p>Order total: {total}</p>"
        ),
    }


class EmailSender:
    """Fire-and-forget sender. Delivery errors are logged and counted."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        enabled: Optional[bool] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.api_key = (api_key if api_key is not None else Config.RESEND_API_KEY).strip()
        self.enabled = Config.EMAIL_ENABLED if enabled is None else enabled
        self.logger = logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or Config.EMAIL_WORKERS,
            thread_name_prefix="gule-email",
        )

    def send(self, payload: Dict[str, Any]) -> Optional[Future]:
        if not self.enabled:
            self.logger.debug("Email disabled; skipping '%s'", payload.get("subject"))
            return None
        if not self.api_key:
            self.logger.warning("Resend API key is not configured; email '%s' not sent", payload.get("subject"))
            return None
        return self._executor.submit(self._deliver, payload)

    def _deliver(self, payload: Dict[str, Any]) -> bool:
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception:
            self.logger.exception("Email delivery failed for '%s'", payload.get("subject"))
            increment_counter("emails_failed_total")
            return False

        if not isinstance(response, dict) or not response.get("id"):
            self.logger.error("Unexpected Resend response: %s", response)
            increment_counter("emails_failed_total")
            return False

        increment_counter("emails_sent_total")
        return True

    def send_order_confirmation(self, order_number: str, recipient: str, items: List[Dict[str, Any]], total: Decimal) -> Optional[Future]:
        return self.send(build_order_confirmation(order_number, recipient, items, total))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class RecordingEmailSender(EmailSender):
    """Captures payloads instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.logger = logging.getLogger(__name__)
        self.enabled = True
        self.api_key = ""

    def send(self, payload: Dict[str, Any]) -> Optional[Future]:
        self.sent.append(payload)
        return None

    def shutdown(self) -> None:
        return None


_default_sender: Optional[EmailSender] = None


def get_email_sender() -> EmailSender:
    global _default_sender
    if _default_sender is None:
        _default_sender = EmailSender()
    return _default_sender
