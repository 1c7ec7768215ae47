"""
Notifier that only writes to the log. Default when no email API is configured.
"""
import logging

from ..base import Notifier

logger = logging.getLogger(__name__)


class LoggingNotifier(Notifier):
    def send_invitation(self, email, token, expires_at):
        # never log the token itself
        logger.info(f"Invitation for {email} expires at {expires_at.isoformat()}")

    def send_role_changed(self, user_id, team_id, role):
        logger.info(f"User {user_id} is now {role} in team {team_id}")
