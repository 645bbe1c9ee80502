"""multissh - concurrent SSH session manager with SFTP transfers."""

__version__ = "0.1.0"

from multissh.config import ManagerSettings
from multissh.events import EventBus, EventKind
from multissh.models import SessionConfig, SessionSnapshot, SessionStatus
from multissh.session import SessionManager

__all__ = [
    "EventBus",
    "EventKind",
    "ManagerSettings",
    "SessionConfig",
    "SessionManager",
    "SessionSnapshot",
    "SessionStatus",
    "__version__",
]
