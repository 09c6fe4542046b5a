"""Content-addressed pinning with verified writes and gateway fallback."""
from .models import MaintenanceOutcome, MaintenanceResult, PinRecord, PinResult
from .service import PinningService, is_local, local_content_id

__all__ = [
    "MaintenanceOutcome",
    "MaintenanceResult",
    "PinRecord",
    "PinResult",
    "PinningService",
    "is_local",
    "local_content_id",
]
