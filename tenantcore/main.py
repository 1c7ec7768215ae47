"""
Service wiring and the FastAPI application exposing billing webhooks,
health and metrics.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import NamedTuple

from fastapi import FastAPI

from .audit.logger import ActivityLog
from .billing.state_machine import SubscriptionStateMachine
from .billing.subscriptions import SubscriptionService
from .billing.webhook import router as billing_router
from .config import Settings
from .db.base import utcnow
from .db.database import init_db, make_engine, make_session_factory
from .multi_tenant.invitations import InvitationManager
from .multi_tenant.membership import MembershipStore
from .multi_tenant.organisation import OrganizationService
from .notifications.service import NotificationDispatcher, notifier_from_settings
from .observability.health import router as health_router
from .observability.logging import setup_logging
from .observability.metrics import metrics_router
from .observability.tracing import setup_tracing
from .security.gate import AuthorizationGate
from .security.rbac import RoleRegistry

logger = logging.getLogger(__name__)


class Services(NamedTuple):
    settings: Settings
    registry: RoleRegistry
    activity_log: ActivityLog
    notifications: NotificationDispatcher
    gate: AuthorizationGate
    memberships: MembershipStore
    invitations: InvitationManager
    subscriptions: SubscriptionService
    organizations: OrganizationService


def build_services(settings: Settings, session_factory, notifier=None, clock=utcnow,
                   executor=None) -> Services:
    registry = RoleRegistry.from_settings(settings)
    state_machine = SubscriptionStateMachine.from_settings(settings)
    activity_log = ActivityLog(settings.audit_secret, session_factory, clock=clock)
    notifications = NotificationDispatcher(
        notifier or notifier_from_settings(settings), max_workers=settings.notification_workers,
        executor=executor,
    )
    gate = AuthorizationGate(session_factory, registry, state_machine,
                             billing_gated_actions=settings.billing_gated_actions, clock=clock)
    memberships = MembershipStore(session_factory, registry, activity_log, notifier=notifications,
                                  gate=gate, max_attempts=settings.owner_write_attempts)
    invitations = InvitationManager(session_factory, memberships, activity_log,
                                    notifier=notifications, gate=gate,
                                    default_ttl=settings.invitation_ttl, clock=clock)
    subscriptions = SubscriptionService(session_factory, state_machine, activity_log, gate=gate,
                                        clock=clock, max_attempts=settings.owner_write_attempts)
    organizations = OrganizationService(session_factory, memberships, activity_log, gate=gate,
                                        trial_period=settings.trial_period,
                                        default_team_name=settings.default_team_name, clock=clock)
    return Services(settings, registry, activity_log, notifications, gate, memberships,
                    invitations, subscriptions, organizations)


def create_app(settings: Settings = None, engine=None) -> FastAPI:
    settings = settings or Settings.from_env()
    engine = engine or make_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        logger.info("Starting up tenantcore...")
        init_db(engine)
        app.state.engine = engine
        app.state.services = build_services(settings, make_session_factory(engine))
        logger.info("tenantcore started successfully")
        yield
        logger.info("Shutting down tenantcore...")
        app.state.services.notifications.shutdown(wait=True)
        engine.dispose()
        logger.info("Shutdown complete.")

    app = FastAPI(
        title="tenantcore",
        description="Organization membership, invitations and subscription state",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if os.getenv("ENABLE_DOCS", "true").lower() == "true" else None,
        redoc_url=None,
    )
    app.include_router(billing_router)
    app.include_router(health_router, prefix="/health", tags=["Health"])
    app.include_router(metrics_router, prefix="/metrics", tags=["Metrics"])
    setup_tracing(app, settings)
    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
