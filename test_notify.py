#!/usr/bin/env python3
"""Tests for pushing alerts to ntfy."""

import sys
from pathlib import Path
from unittest.mock import Mock, patch

import requests

sys.path.insert(0, str(Path(__file__).parent))

from election_watch.models import Alert
from election_watch.notify import AlertNotifier, send_ntfy


def make_alert(severity="high"):
    return Alert(
        type="threat_detected",
        severity=severity,
        title="HIGH Threat Detected",
        description="Risk factors: violence",
        geo_unit="Kingston",
        related_item_ids=[1],
        recommendations=["Investigate content source"],
    )


class TestSendNtfy:
    """HTTP contract."""

    @patch("election_watch.notify.requests.post")
    def test_headers(self, mock_post):
        mock_post.return_value = Mock(raise_for_status=Mock())
        assert send_ntfy("Title", "Body", "https://ntfy.sh/", "observers",
                         tags=["threat_detected"], priority="urgent",
                         headers={"Authorization": "Bearer x"})

        url = mock_post.call_args.args[0]
        headers = mock_post.call_args.kwargs["headers"]
        assert url == "https://ntfy.sh/observers"
        assert headers["X-Priority"] == "urgent"
        assert headers["X-Tags"] == "threat_detected"
        assert headers["Authorization"] == "Bearer x"

    @patch("election_watch.notify.requests.post")
    def test_failure_returns_false(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("down")
        assert not send_ntfy("Title", "Body", "https://ntfy.sh", "observers")


class TestAlertNotifier:
    """Severity threshold and dry run."""

    @patch("election_watch.notify.send_ntfy", return_value=True)
    def test_threshold(self, mock_send):
        notifier = AlertNotifier("observers", min_severity="high")
        assert not notifier(make_alert("medium"))
        assert notifier(make_alert("critical"))
        assert mock_send.call_args.kwargs["priority"] == "urgent"
        assert "Parish: Kingston" in mock_send.call_args.kwargs["message"]

    @patch("election_watch.notify.send_ntfy")
    def test_dry_run(self, mock_send):
        assert AlertNotifier("observers", dry_run=True)(make_alert())
        mock_send.assert_not_called()

    def test_from_config_without_topic(self):
        assert AlertNotifier.from_config({"topic": ""}) is None
        assert AlertNotifier.from_config({"topic": "t", "min_severity": "low"}).min_severity == "low"
