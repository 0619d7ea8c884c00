"""
Tests for chimedetect.notifier module.

Tests HTTP and email delivery of detection events.
"""
import os
import smtplib
import threading
from unittest.mock import Mock, patch, MagicMock

import pytest
import requests

from chimedetect.detector import DetectionFired
from chimedetect.notifier import (
    EmailNotifier,
    HttpNotifier,
    Notifier,
    create_notifiers,
    get_email_config,
    send_email,
)


@pytest.fixture
def event():
    return DetectionFired(
        timestamp=1700000000.5,
        detector_id="laundry",
        similarity=0.912,
        threshold=0.85,
        quality=0.7,
        consecutive_matches=3,
    )


@pytest.fixture
def email_config():
    return {
        "smtp_server": "smtp.test.com",
        "smtp_port": 587,
        "smtp_username": "user",
        "smtp_password": "pass",
        "from_address": "from@test.com",
        "to_address": "to@test.com",
        "use_tls": True,
    }


class TestHttpNotifier:
    """Test posting detections to the notification server."""

    def test_wakes_server_then_posts(self, event):
        http = Mock()
        notifier = HttpNotifier("https://notify.example.com/", background=False, http=http)

        assert notifier.send(event) is True

        http.get.assert_called_once_with("https://notify.example.com/api/health", timeout=5.0)
        url = http.post.call_args[0][0]
        assert url == "https://notify.example.com/api/notifications/washing-machine-done"
        assert http.post.call_args[1]["json"] == {
            "detectedBy": "laundry",
            "timestamp": 1700000000500,
            "message": "Washing machine cycle completed",
        }

    def test_health_failure_still_posts(self, event):
        http = Mock()
        http.get.side_effect = requests.ConnectionError("asleep")
        notifier = HttpNotifier("https://notify.example.com", http=http)

        assert notifier.send(event) is True
        http.post.assert_called_once()

    def test_http_error_returns_false(self, event):
        http = Mock()
        http.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        notifier = HttpNotifier("https://notify.example.com", http=http)

        assert notifier.send(event) is False

    def test_timeout_returns_false(self, event):
        http = Mock()
        http.post.side_effect = requests.Timeout("slow")
        notifier = HttpNotifier("https://notify.example.com", http=http)

        assert notifier.send(event) is False

    def test_notify_in_background(self, event):
        delivered = threading.Event()
        http = Mock()
        http.post.side_effect = lambda *args, **kwargs: delivered.set() or Mock()
        notifier = HttpNotifier("https://notify.example.com", http=http)

        notifier.notify(event)
        assert delivered.wait(timeout=2.0)


class TestNotifierBase:
    """Test inline delivery."""

    def test_notify_inline(self, event):
        class Recorder(Notifier):
            def __init__(self):
                super().__init__(background=False)
                self.sent = []

            def send(self, event):
                self.sent.append(event)
                return True

        recorder = Recorder()
        recorder.notify(event)
        assert recorder.sent == [event]


class TestGetEmailConfig:
    """Test email configuration loading."""

    def test_from_config(self, config):
        config["notification"]["email"]["smtp_server"] = "config.server.com"
        with patch.dict(os.environ, {}, clear=True):
            email_config = get_email_config(config)
        assert email_config["smtp_server"] == "config.server.com"
        assert email_config["smtp_port"] == 587
        assert email_config["use_tls"] is True

    def test_from_env(self):
        env_vars = {
            "EMAIL_SMTP_SERVER": "smtp.test.com",
            "EMAIL_SMTP_PORT": "465",
            "EMAIL_SMTP_USERNAME": "testuser",
            "EMAIL_SMTP_PASSWORD": "testpass",
            "EMAIL_FROM": "from@test.com",
            "EMAIL_TO": "to@test.com",
            "EMAIL_USE_TLS": "false",
        }
        with patch.dict(os.environ, env_vars):
            email_config = get_email_config()

        assert email_config["smtp_server"] == "smtp.test.com"
        assert email_config["smtp_port"] == 465
        assert email_config["smtp_username"] == "testuser"
        assert email_config["to_address"] == "to@test.com"
        assert email_config["use_tls"] is False

    def test_env_overrides_config(self, config):
        config["notification"]["email"]["to_address"] = "config@test.com"
        with patch.dict(os.environ, {"EMAIL_TO": "env@test.com"}):
            email_config = get_email_config(config)
        assert email_config["to_address"] == "env@test.com"


class TestSendEmail:
    """Test SMTP delivery (SMTP mocked)."""

    @patch("chimedetect.notifier.smtplib.SMTP")
    def test_send_email_success(self, mock_smtp, email_config):
        server = MagicMock()
        mock_smtp.return_value = server

        assert send_email("body", "subject", email_config) is True

        mock_smtp.assert_called_once_with("smtp.test.com", 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pass")
        server.send_message.assert_called_once()
        server.quit.assert_called_once()

    @patch("chimedetect.notifier.smtplib.SMTP")
    def test_send_email_without_tls(self, mock_smtp, email_config):
        email_config["use_tls"] = False
        server = MagicMock()
        mock_smtp.return_value = server

        send_email("body", "subject", email_config)
        server.starttls.assert_not_called()

    def test_incomplete_config(self):
        assert send_email("body", "subject", {"smtp_server": "", "to_address": ""}) is False

    @patch("chimedetect.notifier.smtplib.SMTP")
    def test_smtp_error(self, mock_smtp, email_config):
        server = MagicMock()
        server.send_message.side_effect = smtplib.SMTPException("rejected")
        mock_smtp.return_value = server

        assert send_email("body", "subject", email_config) is False
        server.quit.assert_called_once()

    @patch("chimedetect.notifier.smtplib.SMTP", side_effect=OSError("unreachable"))
    def test_connection_error(self, mock_smtp, email_config):
        assert send_email("body", "subject", email_config) is False


class TestEmailNotifier:
    """Test the per-detection email."""

    def test_format_body(self, event, email_config):
        notifier = EmailNotifier(email_config, "Dryer finished", background=False)
        body = notifier.format_body(event)
        assert body.startswith("Dryer finished")
        assert "laundry" in body
        assert "0.912" in body
        assert "Quality" in body

    def test_format_body_without_quality(self, event, email_config):
        notifier = EmailNotifier(email_config, "Dryer finished", background=False)
        body = notifier.format_body(DetectionFired(
            timestamp=event.timestamp,
            detector_id=event.detector_id,
            similarity=event.similarity,
            threshold=event.threshold,
            quality=None,
            consecutive_matches=3,
        ))
        assert "Quality" not in body

    @patch("chimedetect.notifier.send_email", return_value=True)
    def test_send(self, mock_send, event, email_config):
        notifier = EmailNotifier(email_config, "Dryer finished", background=False)
        assert notifier.send(event) is True
        body, subject, cfg = mock_send.call_args[0]
        assert subject.startswith("Dryer finished")
        assert cfg is email_config


class TestCreateNotifiers:
    """Test notifier selection from config."""

    def test_none_configured(self, config):
        assert create_notifiers(config) == []

    def test_http_and_email(self, config):
        config["notification"]["server_url"] = "https://notify.example.com"
        config["notification"]["email_enabled"] = True

        notifiers = create_notifiers(config)
        assert [type(n) for n in notifiers] == [HttpNotifier, EmailNotifier]
        assert notifiers[0].server_url == "https://notify.example.com"
