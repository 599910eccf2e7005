# backend/custody/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from custody.core.db import Base, engine, get_db
from custody.core.errors import CustodyError
from custody.api.auth import router as auth_router
from custody.api.wallet import router as wallet_router
from custody.api.withdrawals import router as withdrawals_router, limiter
from custody.api.admin_withdrawals import router as admin_withdrawals_router
from custody.api.admin_deposits import router as admin_deposits_router
from custody.api.admin_pool import router as admin_pool_router

from sqlalchemy.orm import Session
from custody.core.config import settings
from custody.core.enums import UserRole
from custody.core.security import hash_password
from custody.models.user import User
from custody.services.runtime import Runtime, build_runtime, get_runtime, set_runtime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def seed_super_admin():
    """Create the super admin from environment settings"""
    if not settings.SUPER_ADMIN_EMAIL or not settings.SUPER_ADMIN_PASSWORD:
        return
    db: Session
    with next(get_db()) as db:
        exists = db.query(User).filter(User.email == settings.SUPER_ADMIN_EMAIL).first()
        if exists:
            # already there: only fix the role
            if exists.role != UserRole.ADMIN.value:
                exists.role = UserRole.ADMIN.value
                db.commit()
            return
        admin = User(
            email=settings.SUPER_ADMIN_EMAIL,
            password_hash=hash_password(settings.SUPER_ADMIN_PASSWORD),
            role=UserRole.ADMIN.value,
        )
        db.add(admin)
        db.commit()


def start_custody(runtime: Runtime | None = None, start_monitor: bool | None = None) -> Runtime | None:
    """Load the seed, verify pool addresses and start the chain monitor. Fails closed."""
    try:
        runtime = runtime or build_runtime(settings)
        runtime.pool.initialize()
    except CustodyError as e:
        logger.critical(f"Custody disabled: {e.message}")
        set_runtime(None)
        return None

    set_runtime(runtime)
    if start_monitor is None:
        start_monitor = settings.MONITOR_ENABLED
    if start_monitor and runtime.monitor is not None:
        runtime.monitor.start()
    return runtime


def stop_custody():
    try:
        runtime = get_runtime()
    except CustodyError:
        return
    if runtime.monitor is not None:
        runtime.monitor.stop()
    if runtime.notifier is not None and hasattr(runtime.notifier, "shutdown"):
        runtime.notifier.shutdown()
    set_runtime(None)


def create_app(runtime: Runtime | None = None, start_monitor: bool | None = None) -> FastAPI:
    app = FastAPI(title="Custody API")

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(CustodyError)
    def custody_error_handler(request: Request, exc: CustodyError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__, "context": exc.context},
        )

    @app.on_event("startup")
    def on_startup():
        Base.metadata.create_all(bind=engine)
        seed_super_admin()
        start_custody(runtime, start_monitor)

    @app.on_event("shutdown")
    def on_shutdown():
        stop_custody()

    @app.get("/healthz")
    def healthz():
        try:
            get_runtime()
            custody = "ok"
        except CustodyError:
            custody = "disabled"
        return {"status": "ok", "custody": custody}

    app.include_router(auth_router)
    app.include_router(wallet_router)
    app.include_router(withdrawals_router)
    app.include_router(admin_withdrawals_router)
    app.include_router(admin_deposits_router)
    app.include_router(admin_pool_router)
    return app


app = create_app()
