# API Routes Module
from app.api.routes import (
    access,
    compliance,
    subscriptions,
)

__all__ = [
    "access",
    "compliance",
    "subscriptions",
]
