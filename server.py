"""
Admin Dashboard Server
======================
FastAPI JSON API for the restaurant back office.

Callers authenticate with the bearer access token returned by /auth/login.
Every protected route resolves that token to its own session and asks for a
route decision first:
    WAIT                  -> 503 + Retry-After (token still being verified)
    REDIRECT_LOGIN        -> 401
    REDIRECT_UNAUTHORIZED -> 403
    GRANT                 -> handler runs

NO BUSINESS LOGIC - stores and the order lifecycle live in their own modules.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog
import uvicorn

from config import Config, get_config, validate_configuration
from db import DocumentStore, NotFoundError, StoreError, create_supabase_client
from identity import AuthError, SupabaseIdentityProvider, create_sign_in_client
from menu import CatalogStore
from models import OperatorRole
from order import OrderStore
from order_state import InvalidTransitionError, OrderStatus
from schemas import (
    CategoryCreate,
    LoginRequest,
    MenuItemCreate,
    MenuItemUpdate,
    OperatorCreate,
    OrderCreate,
    OrderStatusUpdate,
    OrderUpdate,
    PasswordResetRequest,
)
from session_gate import RouteDecision, Session, SessionRegistry, route_decision


# Structured logging
logger = structlog.get_logger(__name__)


# ============================================================================
# SERVICES
# ============================================================================

@dataclass
class Services:
    """Collaborators injected into the app."""
    store: DocumentStore
    sessions: SessionRegistry
    catalog: CatalogStore
    orders: OrderStore


def build_services(config: Config) -> Services:
    """Wire the Supabase-backed services from configuration."""
    client = create_supabase_client(config.supabase)
    store = DocumentStore(client)
    identity = SupabaseIdentityProvider(
        client,
        reset_redirect_url=config.dashboard.password_reset_redirect_url,
        sign_in_client=lambda: create_sign_in_client(config.supabase.url, config.supabase.key)
    )

    return Services(
        store=store,
        sessions=SessionRegistry(
            identity,
            store,
            ttl=config.dashboard.session_ttl,
            wait_timeout=config.dashboard.auth_wait_timeout
        ),
        catalog=CatalogStore(store),
        orders=OrderStore(store),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# ACCESS CONTROL
# ============================================================================

bearer = HTTPBearer(auto_error=False)


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[str]:
    return credentials.credentials if credentials else None


async def require_operator(request: Request, token: Optional[str] = Depends(bearer_token)) -> Session:
    """Admit only callers whose own session is privileged."""
    session = await get_services(request).sessions.session_for(token)
    decision = route_decision(session.state)

    if decision == RouteDecision.GRANT:
        return session

    logger.info("access_denied", path=request.url.path, decision=decision.value)

    if decision == RouteDecision.WAIT:
        raise HTTPException(
            status_code=503,
            detail="Authentication pending",
            headers={"Retry-After": str(request.app.state.retry_after)}
        )
    if decision == RouteDecision.REDIRECT_LOGIN:
        raise HTTPException(status_code=401, detail="Not signed in")

    raise HTTPException(status_code=403, detail="Operator access required")


async def require_superadmin(session: Session = Depends(require_operator)) -> Session:
    if session.role != OperatorRole.SUPERADMIN:
        raise HTTPException(status_code=403, detail="Superadmin access required")
    return session


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(
    services: Services,
    retry_after: int = 1,
    seed_default_categories: bool = False,
    cors_origins: Optional[List[str]] = None,
    enable_metrics: bool = True
) -> FastAPI:
    """Build the dashboard API around the given services."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if seed_default_categories:
            try:
                await services.catalog.ensure_default_categories()
            except StoreError as e:
                logger.error("category_seed_failed", error=str(e))

        logger.info("dashboard_started")
        yield

        await services.sessions.stop()
        logger.info("dashboard_stopped")

    app = FastAPI(title="Restaurant Admin Dashboard API", lifespan=lifespan)
    app.state.services = services
    app.state.retry_after = retry_after

    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Credentialed requests only from an explicit origin list
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def transition_error_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "from_status": exc.from_status,
                "to_status": exc.to_status,
            }
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("store_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    # ------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy" if services.store.is_healthy() else "degraded",
            "sessions": len(services.sessions),
            "store": services.store.get_stats(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    if enable_metrics:
        @app.get("/metrics")
        async def metrics():
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    @app.post("/auth/login")
    async def login(payload: LoginRequest):
        access_token, session = await services.sessions.sign_in(payload.email, payload.password)
        logger.info(
            "operator_login",
            user_id=session.user.id,
            privileged=session.is_privileged
        )
        return {
            "access_token": access_token,
            "token_type": "bearer",
            **session.to_dict(),
            "decision": route_decision(session.state).value,
        }

    @app.post("/auth/logout")
    async def logout(token: Optional[str] = Depends(bearer_token)):
        if token:
            await services.sessions.sign_out(token)
        return {"signed_out": True}

    @app.post("/auth/reset-password")
    async def reset_password(payload: PasswordResetRequest):
        await services.sessions.request_password_reset(payload.email)
        return {"sent": True}

    @app.get("/auth/session")
    async def current_session(token: Optional[str] = Depends(bearer_token)):
        session = await services.sessions.session_for(token)
        return {
            **session.to_dict(),
            "decision": route_decision(session.state).value,
        }

    @app.post("/auth/operators", status_code=201)
    async def register_operator(
        payload: OperatorCreate,
        session: Session = Depends(require_superadmin)
    ):
        operator = await services.sessions.register_operator(
            payload.email,
            payload.password,
            payload.display_name
        )
        logger.info("operator_registered", operator_id=operator.id, by=session.user.id)
        return operator.to_dict()

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------
    @app.get("/menu", dependencies=[Depends(require_operator)])
    async def list_menu(category: Optional[str] = None):
        if category:
            items = await services.catalog.list_menu_items_by_category(category)
        else:
            items = await services.catalog.list_menu_items()
        return [item.to_dict() for item in items]

    @app.get("/menu/{item_id}", dependencies=[Depends(require_operator)])
    async def get_menu_item(item_id: str):
        item = await services.catalog.get_menu_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Menu item not found")
        return item.to_dict()

    @app.post("/menu", status_code=201, dependencies=[Depends(require_operator)])
    async def create_menu_item(payload: MenuItemCreate):
        item = await services.catalog.create_menu_item(payload)
        return item.to_dict()

    @app.patch("/menu/{item_id}", dependencies=[Depends(require_operator)])
    async def update_menu_item(item_id: str, patch: MenuItemUpdate):
        item = await services.catalog.update_menu_item(item_id, patch)
        return item.to_dict()

    @app.delete("/menu/{item_id}", dependencies=[Depends(require_operator)])
    async def delete_menu_item(item_id: str):
        await services.catalog.delete_menu_item(item_id)
        return {"deleted": item_id}

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    @app.get("/categories", dependencies=[Depends(require_operator)])
    async def list_categories():
        return [c.to_dict() for c in await services.catalog.list_categories()]

    @app.post("/categories", status_code=201, dependencies=[Depends(require_operator)])
    async def create_category(payload: CategoryCreate):
        category = await services.catalog.create_category(payload.name)
        return category.to_dict()

    @app.patch("/categories/{category_id}", dependencies=[Depends(require_operator)])
    async def rename_category(category_id: str, payload: CategoryCreate):
        category = await services.catalog.update_category(category_id, payload.name)
        return category.to_dict()

    @app.delete("/categories/{category_id}", dependencies=[Depends(require_operator)])
    async def delete_category(category_id: str):
        await services.catalog.delete_category(category_id)
        return {"deleted": category_id}

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @app.get("/orders", dependencies=[Depends(require_operator)])
    async def list_orders(status: Optional[OrderStatus] = None, user_id: Optional[str] = None):
        if status is not None:
            orders = await services.orders.list_orders_by_status(status)
        elif user_id:
            orders = await services.orders.list_orders_by_user(user_id)
        else:
            orders = await services.orders.list_orders()

        if status is not None and user_id:
            orders = [o for o in orders if o.user_id == user_id]

        return [order.to_dict() for order in orders]

    @app.get("/orders/{order_id}", dependencies=[Depends(require_operator)])
    async def get_order(order_id: str):
        order = await services.orders.get_order(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return order.to_dict()

    @app.post("/orders", status_code=201, dependencies=[Depends(require_operator)])
    async def create_order(payload: OrderCreate):
        order = await services.orders.create_order(payload)
        return order.to_dict()

    @app.patch("/orders/{order_id}", dependencies=[Depends(require_operator)])
    async def update_order(order_id: str, patch: OrderUpdate):
        order = await services.orders.update_order(order_id, patch)
        return order.to_dict()

    @app.patch("/orders/{order_id}/status")
    async def update_order_status(
        order_id: str,
        payload: OrderStatusUpdate,
        session: Session = Depends(require_operator)
    ):
        order = await services.orders.update_status(order_id, payload.status)
        logger.info(
            "order_status_changed",
            order_id=order_id,
            status=order.status.value,
            by=session.user.id
        )
        return order.to_dict()

    @app.delete("/orders/{order_id}", dependencies=[Depends(require_operator)])
    async def delete_order(order_id: str):
        await services.orders.delete_order(order_id)
        return {"deleted": order_id}

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------
    @app.get("/dashboard")
    async def dashboard(session: Session = Depends(require_operator)):
        return {
            "operator": {
                "display_name": session.display_name,
                "role": session.role.value if session.role else None,
            },
            "menu_items": await services.catalog.count_menu_items(),
            "orders": await services.orders.get_order_stats(),
        }

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the dashboard server."""
    config = get_config()

    logging.basicConfig(
        level=config.server.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    validate_configuration()

    app = create_app(
        build_services(config),
        retry_after=config.dashboard.auth_wait_retry_after,
        seed_default_categories=config.dashboard.seed_default_categories,
        cors_origins=config.server.cors_origins,
        enable_metrics=config.dashboard.enable_metrics
    )

    logger.info("server_starting", host=config.server.host, port=config.server.port)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
