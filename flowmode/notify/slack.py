#!/usr/bin/env python3
from __future__ import annotations

import logging

import requests

from flowmode.core.models import SessionConfig, SessionRecord

DEFAULT_TIMEOUT = 10
START_MESSAGE = "In flow mode, will reply later."


class SlackWebhook:
    """Posts session summaries to a Slack incoming webhook.
    Delivery problems are logged here and never reach the session.
    """

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def post(self, message: str) -> bool:
        try:
            response = self.session.post(self.url, json={"text": message}, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logging.warning(f"Failed to post to Slack: {e}")
            return False
        logging.debug("Posted session update to Slack")
        return True

    def session_started(self, config: SessionConfig) -> bool:
        return self.post(START_MESSAGE)

    def session_ended(self, record: SessionRecord) -> bool:
        minutes = int(record.duration.total_seconds() // 60)
        return self.post(
            f"Back from flow mode ({record.outcome.value} after {minutes} min on '{record.task}')."
        )

