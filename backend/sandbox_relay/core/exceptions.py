"""
Custom Exceptions for Sandbox Relay
===================================

Every error carries a machine-readable ``code`` plus a ``category`` that the
HTTP boundary maps to a status code, and a ``retryable`` flag the client can
act on.

Usage:
    from sandbox_relay.core.exceptions import SandboxLostError

    try:
        await provider.create_session(handle)
    except SandboxProviderError as e:
        await state_store.reset(tenant_key)
        raise SandboxLostError(handle.id, str(e)) from e

Conditions the service can repair itself (stale sandbox id, failed health
probe, a single unparseable output line) are handled where they are detected
and never reach the boundary.
"""

from typing import Optional, Any, Dict


class SandboxRelayError(Exception):
    """Base exception for all Sandbox Relay errors"""

    category: str = "internal"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details
        }


# ============================================
# Configuration Errors (never retried)
# ============================================

class ConfigurationError(SandboxRelayError):
    """Required configuration or prebuilt environment is missing"""

    category = "configuration"

    def __init__(self, message: str, hint: Optional[str] = None, code: str = "MISSING_CONFIGURATION"):
        super().__init__(message, code=code)
        self.hint = hint
        if hint:
            self.details["hint"] = hint


class SnapshotNotFoundError(ConfigurationError):
    """Sandbox snapshot has not been built yet"""

    def __init__(self, snapshot: str, original_error: str = ""):
        super().__init__(
            f"Sandbox snapshot '{snapshot}' not found",
            hint="Run 'sandbox-relay create-snapshot' to build the snapshot before starting the service",
            code="SNAPSHOT_NOT_FOUND",
        )
        self.details["snapshot"] = snapshot
        if original_error:
            self.details["original_error"] = original_error


# ============================================
# Provider Errors
# ============================================

class SandboxProviderError(SandboxRelayError):
    """Remote execution provider call failed (transport or API error)"""

    category = "provider"

    def __init__(self, message: str, sandbox_id: Optional[str] = None, code: str = "PROVIDER_ERROR"):
        super().__init__(message, code=code)
        if sandbox_id:
            self.details["sandbox_id"] = sandbox_id


class SandboxNotFoundError(SandboxProviderError):
    """Sandbox id is unknown to the provider"""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox '{sandbox_id}' not found", sandbox_id, code="SANDBOX_NOT_FOUND")


class SandboxCreateError(SandboxProviderError):
    """Creating a new sandbox failed"""

    def __init__(self, message: str):
        super().__init__(f"Failed to create sandbox: {message}", code="SANDBOX_CREATE_FAILED")


class SandboxStartError(SandboxProviderError):
    """Starting a stopped or archived sandbox failed"""

    def __init__(self, sandbox_id: str, message: str):
        super().__init__(f"Failed to start sandbox: {message}", sandbox_id, code="SANDBOX_START_FAILED")


class SandboxLostError(SandboxRelayError):
    """Sandbox disappeared mid-operation; the next request recreates it"""

    category = "resource_lost"
    retryable = True

    def __init__(self, sandbox_id: Optional[str], message: str = ""):
        super().__init__(
            "Sandbox connection lost. Please retry your request." +
            (f" ({message})" if message else ""),
            code="SANDBOX_LOST",
        )
        if sandbox_id:
            self.details["sandbox_id"] = sandbox_id


# ============================================
# Storage Errors
# ============================================

class StateStoreError(SandboxRelayError):
    """State store is unavailable"""

    category = "storage"

    def __init__(self, message: str, tenant_key: Optional[str] = None):
        super().__init__(message, code="STATE_STORE_ERROR")
        if tenant_key:
            self.details["tenant_key"] = tenant_key


# ============================================
# Validation Errors (400-type)
# ============================================

class ValidationError(SandboxRelayError):
    """Input validation failed"""

    category = "validation"

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


# ============================================
# Helpers for API responses
# ============================================

CATEGORY_STATUS_CODES: Dict[str, int] = {
    "validation": 400,
    "configuration": 503,
    "resource_lost": 503,
    "storage": 503,
    "provider": 502,
    "internal": 500,
}


def status_code_for(error: SandboxRelayError) -> int:
    """HTTP status code for an error category"""
    return CATEGORY_STATUS_CODES.get(error.category, 500)


def error_response(error: SandboxRelayError) -> Dict[str, Any]:
    """Convert exception to API error response format"""
    return {
        "success": False,
        "error": error.to_dict()
    }
