from console_core.console import ConsoleStore
from console_core.core.config import Settings, get_settings
from console_core.principal import Principal, SessionState

__all__ = ["ConsoleStore", "Settings", "get_settings", "Principal", "SessionState"]
