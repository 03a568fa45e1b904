from .routes import router, ws_router, get_relay
from .models import ConnectionState, RelayStatus

__all__ = ["router", "ws_router", "get_relay", "ConnectionState", "RelayStatus"]
