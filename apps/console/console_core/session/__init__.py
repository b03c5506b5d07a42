from console_core.session.manager import SESSION_AUTHENTICATED, SESSION_CLEARED, SessionManager
from console_core.session.provisioning import AccountProvisioner

__all__ = ["SESSION_AUTHENTICATED", "SESSION_CLEARED", "SessionManager", "AccountProvisioner"]
