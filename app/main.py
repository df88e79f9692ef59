from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.config.startup_log import log_startup_config
from app.core.handlers.exceptions import add_exception_handlers
from app.core.middleware import add_api_unhandled_error_middleware, add_request_id_middleware
from app.db.session import close_db, init_db
from app.dependencies import router_repo_context
from app.modules.accounts import api as accounts_api
from app.modules.groups import api as groups_api
from app.modules.groups.balancer import GroupLoadBalancer
from app.modules.groups.scheduler import build_group_health_scheduler
from app.modules.health import api as health_api
from app.modules.health.service import HealthService
from app.modules.metrics import api as metrics_api
from app.modules.permissions import api as permissions_api
from app.modules.permissions.selector import AccountSelector

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_startup_config()
    await init_db()

    app.state.account_selector = AccountSelector(repo_factory=router_repo_context)
    app.state.health_service = HealthService(repo_factory=router_repo_context)
    app.state.group_balancer = GroupLoadBalancer(repo_factory=router_repo_context)
    scheduler = build_group_health_scheduler(app.state.group_balancer)
    await scheduler.start()
    logger.info("pool_router_started group_health_check_enabled=%s", scheduler.enabled)

    try:
        yield
    finally:
        try:
            await scheduler.stop()
        finally:
            await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="pool-router", version="0.1.0", lifespan=lifespan)

    add_api_unhandled_error_middleware(app)
    add_request_id_middleware(app)
    add_exception_handlers(app)

    app.include_router(accounts_api.router)
    app.include_router(permissions_api.router)
    app.include_router(health_api.router)
    app.include_router(groups_api.router)
    app.include_router(metrics_api.router)

    return app


app = create_app()
