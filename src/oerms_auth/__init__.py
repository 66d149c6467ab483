"""OERMS auth core.

OAuth 2.0 Authorization Code login with PKCE, client-side session and
token lifecycle, and fail-closed role and policy gates for the OERMS
front-end.
"""

__version__ = "0.1.0"

from oerms_auth.config import Config, ConfigError, load_config
from oerms_auth.oauth.session import Session, SessionManager, UserRecord
from oerms_auth.policy import PolicyDecision, PolicyEvaluator, PolicyGate, RoleGate
from oerms_auth.services import AuthServices, build_services

__all__ = [
    "AuthServices",
    "Config",
    "ConfigError",
    "PolicyDecision",
    "PolicyEvaluator",
    "PolicyGate",
    "RoleGate",
    "Session",
    "SessionManager",
    "UserRecord",
    "__version__",
    "build_services",
    "load_config",
]
