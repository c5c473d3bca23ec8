"""Authentication flows: interactive CLI login and OAuth device flow."""

from tenantbox.auth.classify import Marker, MarkerKind, classify_output
from tenantbox.auth.codes import looks_like_auth_code
from tenantbox.auth.device_flow import DeviceFlowClient, generate_pkce_pair
from tenantbox.auth.interactive import AuthSession, InteractiveAuthenticator

__all__ = [
    "AuthSession",
    "DeviceFlowClient",
    "InteractiveAuthenticator",
    "Marker",
    "MarkerKind",
    "classify_output",
    "generate_pkce_pair",
    "looks_like_auth_code",
]
