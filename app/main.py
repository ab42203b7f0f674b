from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import auth
from app.api.errors import register_exception_handlers
from app.core.config import settings
from app.core.logging import init_sentry, setup_logging
from app.db.base import Base
from app.db.session import engine
from app.middleware.logging import AccessLoggingMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.is_production:
        # Production schemas are managed by migrations
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


app = FastAPI(
    title=f"{settings.APP_NAME} - Authentication API",
    description="""
## 🔐 Authentication

Multi-tenant authentication for the school administration platform.

### Password login
1. `POST /api/auth/login` with `{"email", "password", "tenant_id"}`
2. Without 2FA the response carries `access_token` and `refresh_token`
3. With 2FA the response carries `requires_two_factor: true` and a `partial_token`;
   send it with a TOTP or backup code to `POST /api/auth/2fa/validate`

### Passwordless login
1. `POST /api/auth/otp/request` with `{"identifier", "channel", "tenant_id"}`
2. `POST /api/auth/otp/verify` with the received code

### Sessions
- Access tokens live 15 minutes; renew them with `POST /api/auth/refresh`
- Refresh tokens are single-use: every refresh returns a new one
- Click **Authorize** and paste an `access_token` to call protected endpoints 🔒
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Initialize logging and error tracking
setup_logging()
init_sentry()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(AccessLoggingMiddleware, enabled=settings.MODE != "test")

register_exception_handlers(app)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])


@app.get("/health")
async def health():
    return {"status": "ok"}
