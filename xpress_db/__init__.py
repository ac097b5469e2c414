# This project was developed with assistance from AI tools.
__version__ = "0.1.0"

from .database import Base, DatabaseService, get_db, get_db_service
from .enums import (
    ApprovalStatus,
    DataClass,
    NotificationChannel,
    OwnershipAccessLevel,
    OwnershipType,
    Permission,
    PIIScope,
    Role,
    SensitivityLevel,
)
from .models import AuditEvent

__all__ = [
    "Base",
    "DatabaseService",
    "get_db",
    "get_db_service",
    "__version__",
    # Enums
    "Role",
    "Permission",
    "PIIScope",
    "DataClass",
    "OwnershipType",
    "OwnershipAccessLevel",
    "SensitivityLevel",
    "ApprovalStatus",
    "NotificationChannel",
    # Models
    "AuditEvent",
]
