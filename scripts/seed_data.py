#!/usr/bin/env python3
"""
Seed a demo organization with a second team and a pending invitation.
"""
from tenantcore.config import Settings
from tenantcore.db.database import init_db, make_engine, make_session_factory
from tenantcore.main import build_services


def main():
    settings = Settings.from_env()
    engine = make_engine(settings.database_url)
    init_db(engine)
    services = build_services(settings, make_session_factory(engine))

    org = services.organizations.create_organization("admin", "Acme", settings={"plan": "demo"})
    team = services.organizations.create_team(org.id, "Engineering", acting_user_id="admin")
    issued = services.invitations.issue(org.id, team.id, "bob@example.com", "member",
                                        acting_user_id="admin")
    services.notifications.shutdown(wait=True)
    print(f"Seeded organization {org.id}; invitation token for bob@example.com: {issued.token}")


if __name__ == "__main__":
    main()
