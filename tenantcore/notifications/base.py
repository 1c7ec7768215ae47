from abc import ABC, abstractmethod
from datetime import datetime


class Notifier(ABC):
    @abstractmethod
    def send_invitation(self, email: str, token: str, expires_at: datetime) -> None:
        """Deliver an invitation link carrying ``token``."""
        pass

    @abstractmethod
    def send_role_changed(self, user_id: str, team_id: str, role: str) -> None:
        """Tell a user their role in a team changed."""
        pass
