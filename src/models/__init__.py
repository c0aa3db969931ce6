from .database import (
    Base,
    get_engine,
    get_session_maker,
    init_database,
    dispose_engines,
)
from .remote_user import (
    RemoteUser,
    RemoteUserDB,
)

__all__ = [
    "Base",
    "get_engine",
    "get_session_maker",
    "init_database",
    "dispose_engines",
    "RemoteUser",
    "RemoteUserDB",
]
