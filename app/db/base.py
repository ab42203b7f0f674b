from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Models must be imported so they register on Base.metadata
from app.models import (  # noqa: E402,F401
    tenant,
    user,
    refresh_token,
    otp,
    backup_code,
    audit_log,
    login_attempt,
    verification_token,
)
