# Caregiver Sync API v1
from api.v1 import (
    loopers,
    websocket,
)

__all__ = [
    "loopers",
    "websocket",
]
