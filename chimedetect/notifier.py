"""
Detection notification delivery.

Single Responsibility: Hand a DetectionFired event to the outside world.
Delivery runs off the detection worker and failures are logged, never
raised back into it.
"""
import os
import smtplib
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import requests

from logger import get_logger
from .detector import DetectionFired

log = get_logger(__name__)


class Notifier(ABC):
    """Delivers detection events; notify() must return promptly."""

    name = "notifier"

    def __init__(self, background: bool = True):
        self.background = background

    @abstractmethod
    def send(self, event: DetectionFired) -> bool:
        """Deliver one event synchronously. Returns True on success."""

    def notify(self, event: DetectionFired) -> None:
        if not self.background:
            self.send(event)
            return
        thread = threading.Thread(
            target=self.send, args=(event,), name=f"{self.name}-notify", daemon=True
        )
        thread.start()


# ============================================================================
# HTTP
# ============================================================================

class HttpNotifier(Notifier):
    """
    Posts detections to the notification server.

    The server may be asleep on a free hosting tier, so each delivery first
    hits the health endpoint to wake it; that call is best effort.
    """

    name = "http"

    def __init__(
        self,
        server_url: str,
        endpoint: str = "/api/notifications/washing-machine-done",
        health_endpoint: str = "/api/health",
        timeout: float = 5.0,
        message: str = "Washing machine cycle completed",
        background: bool = True,
        http: Any = None
    ):
        super().__init__(background)
        self.server_url = server_url.rstrip("/")
        self.endpoint = endpoint
        self.health_endpoint = health_endpoint
        self.timeout = timeout
        self.message = message
        self.http = http or requests

    def payload(self, event: DetectionFired) -> Dict[str, Any]:
        return {
            "detectedBy": event.detector_id,
            "timestamp": event.timestamp_ms,
            "message": self.message,
        }

    def wake_server(self) -> bool:
        try:
            response = self.http.get(self.server_url + self.health_endpoint, timeout=self.timeout)
            log.debug("Server health check: HTTP %s", response.status_code)
            return response.ok
        except requests.RequestException as e:
            log.warning("Server health check failed (continuing): %s", e)
            return False

    def send(self, event: DetectionFired) -> bool:
        self.wake_server()
        url = self.server_url + self.endpoint
        try:
            response = self.http.post(url, json=self.payload(event), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            log.error("Failed to notify server at %s: %s", url, e)
            return False
        log.info("Server notified of detection (HTTP %s)", response.status_code)
        return True


# ============================================================================
# Email
# ============================================================================

def get_email_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Get email configuration from the notification section and environment.

    Environment variables override config file values.

    Args:
        config: Optional configuration dictionary (from config.json)

    Returns:
        Dictionary with smtp_server, smtp_port, smtp_username, smtp_password,
        from_address, to_address and use_tls
    """
    email_config: Dict[str, Any] = {}
    if config and "email" in config.get("notification", {}):
        email_config = dict(config["notification"]["email"])

    email_config["smtp_server"] = os.getenv("EMAIL_SMTP_SERVER", email_config.get("smtp_server", ""))
    email_config["smtp_port"] = int(os.getenv("EMAIL_SMTP_PORT", email_config.get("smtp_port", 587)))
    email_config["smtp_username"] = os.getenv("EMAIL_SMTP_USERNAME", email_config.get("smtp_username", ""))
    email_config["smtp_password"] = os.getenv("EMAIL_SMTP_PASSWORD", email_config.get("smtp_password", ""))
    email_config["from_address"] = os.getenv("EMAIL_FROM", email_config.get("from_address", ""))
    email_config["to_address"] = os.getenv("EMAIL_TO", email_config.get("to_address", ""))
    email_config["use_tls"] = os.getenv("EMAIL_USE_TLS", str(email_config.get("use_tls", True))).lower() == "true"
    return email_config


def send_email(body: str, subject: str, email_config: Dict[str, Any]) -> bool:
    """
    Send a plain-text email via SMTP.

    Returns:
        True if the message was handed to the server, False otherwise
    """
    if not email_config.get("smtp_server") or not email_config.get("to_address"):
        log.error("Email configuration incomplete. Set EMAIL_SMTP_SERVER and EMAIL_TO environment variables.")
        return False

    msg = MIMEMultipart()
    msg["From"] = email_config.get("from_address") or email_config.get("smtp_username") or "chime-detector@localhost"
    msg["To"] = email_config["to_address"]
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    server = None
    try:
        server = smtplib.SMTP(email_config["smtp_server"], email_config["smtp_port"])
        if email_config.get("use_tls", True):
            server.starttls()
        if email_config.get("smtp_username") and email_config.get("smtp_password"):
            server.login(email_config["smtp_username"], email_config["smtp_password"])
        server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        log.error("Failed to send email: %s", e)
        return False
    finally:
        if server is not None:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                pass  # already delivered or already failed

    log.info("Email sent to %s", email_config["to_address"])
    return True


class EmailNotifier(Notifier):
    """Sends one email per detection."""

    name = "email"

    def __init__(self, email_config: Dict[str, Any], message: str, background: bool = True):
        super().__init__(background)
        self.email_config = email_config
        self.message = message

    def format_body(self, event: DetectionFired) -> str:
        when = datetime.fromtimestamp(event.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            self.message,
            "",
            f"Detected at: {when}",
            f"Detector:    {event.detector_id}",
            f"Similarity:  {event.similarity:.3f} (threshold {event.threshold:.3f})",
        ]
        if event.quality is not None:
            lines.append(f"Quality:     {event.quality:.3f}")
        return "\n".join(lines) + "\n"

    def send(self, event: DetectionFired) -> bool:
        when = datetime.fromtimestamp(event.timestamp).strftime("%H:%M")
        return send_email(self.format_body(event), f"{self.message} ({when})", self.email_config)


def create_notifiers(config: Dict[str, Any]) -> List[Notifier]:
    """Build the notifiers enabled in the notification section."""
    n = config["notification"]
    notifiers: List[Notifier] = []
    if n.get("server_url"):
        notifiers.append(HttpNotifier(
            n["server_url"],
            endpoint=n["endpoint"],
            health_endpoint=n["health_endpoint"],
            timeout=float(n["timeout_sec"]),
            message=n["message"],
        ))
    if n.get("email_enabled"):
        notifiers.append(EmailNotifier(get_email_config(config), n["message"]))
    if not notifiers:
        log.warning("No notifiers configured; detections will only be logged")
    return notifiers
