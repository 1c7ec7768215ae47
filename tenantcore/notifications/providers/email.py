"""
Email notifier posting JSON to a transactional email HTTP API.
"""
import logging

import requests

from ..base import Notifier

logger = logging.getLogger(__name__)


class HttpEmailNotifier(Notifier):
    def __init__(self, api_url: str, api_key: str = None, sender: str = "no-reply@example.com",
                 invite_url_template: str = "https://app.example.com/invitations/{token}",
                 timeout: float = 5.0, session: requests.Session = None):
        if not api_url:
            raise ValueError("Email API URL not configured")
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.invite_url_template = invite_url_template
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, message: dict):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        response = self.session.post(self.api_url, json=message, headers=headers, timeout=self.timeout)
        response.raise_for_status()

    def send_invitation(self, email, token, expires_at):
        self._post({
            "from": self.sender,
            "to": email,
            "template": "team_invitation",
            "data": {
                "accept_url": self.invite_url_template.format(token=token),
                "expires_at": expires_at.isoformat(),
            },
        })

    def send_role_changed(self, user_id, team_id, role):
        self._post({
            "from": self.sender,
            "to_user": user_id,
            "template": "role_changed",
            "data": {"team_id": team_id, "role": role},
        })
