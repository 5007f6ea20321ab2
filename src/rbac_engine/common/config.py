"""rbac-engine configuration via pydantic-settings."""

import json
import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "audit_hmac_key": "insecure-audit-key-change-me",
}

PERSISTENCE_BACKENDS = ("memory", "json", "sql")


class RBACSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RBAC_")

    environment: str = "development"

    # Audit chain signing key.
    audit_hmac_key: str = "insecure-audit-key-change-me"

    # Audit keyring: JSON dict mapping version (int) to key string.
    # e.g. '{"0": "old-key", "1": "new-key"}'
    # When set, audit_hmac_key is ignored.  When empty, audit_hmac_key is version 0.
    audit_hmac_keys: str = ""

    # Persistence
    persistence: str = "memory"
    data_dir: str = "./data"
    db_url: str = "sqlite:///./data/rbac.db"

    # Legacy role-id aliases: JSON dict mapping old id to current role id.
    # When empty, the built-in migration table is used.
    legacy_role_aliases: str = ""

    log_level: str = "INFO"

    # Header carrying the authenticated user id for route guards
    user_header: str = "X-RBAC-User-Id"

    # Upper bound for a paginated audit query
    max_page_size: int = 500

    @property
    def audit_keyring(self) -> dict[int, str]:
        """Return the audit keyring as {version_int: key_str}.

        If audit_hmac_keys is set, parse it as JSON.
        Otherwise, fall back to scalar audit_hmac_key as version 0.
        """
        if self.audit_hmac_keys:
            try:
                raw = json.loads(self.audit_hmac_keys)
            except (json.JSONDecodeError, TypeError) as exc:
                raise ValueError(
                    f"RBAC_AUDIT_HMAC_KEYS must be valid JSON (e.g. '{{\"0\": \"key\"}}'), got: {self.audit_hmac_keys!r}"
                ) from exc
            return {int(k): v for k, v in raw.items()}
        return {0: self.audit_hmac_key}

    @property
    def current_audit_key(self) -> str:
        """Return the audit key for the current (highest) version."""
        ring = self.audit_keyring
        return ring[max(ring.keys())]

    @property
    def role_aliases(self) -> dict[str, str] | None:
        """Parsed legacy role-id alias table, or None to use the built-in one."""
        if not self.legacy_role_aliases:
            return None
        try:
            raw = json.loads(self.legacy_role_aliases)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValueError(
                f"RBAC_LEGACY_ROLE_ALIASES must be a JSON object, got: {self.legacy_role_aliases!r}"
            ) from exc
        return {str(k): str(v) for k, v in raw.items()}

    def validate_for_production(self) -> None:
        """Raise if insecure or volatile defaults are used outside development."""
        if self.persistence not in PERSISTENCE_BACKENDS:
            raise ValueError(
                f"RBAC_PERSISTENCE must be one of {', '.join(PERSISTENCE_BACKENDS)}, got: {self.persistence!r}"
            )

        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default and not self.audit_hmac_keys
        ]

        if self.environment != "development":
            if insecure_fields:
                env_vars = ", ".join(f"RBAC_{f.upper()}" for f in insecure_fields)
                raise RuntimeError(
                    f"Insecure default values detected in '{self.environment}' environment. "
                    f"Set these environment variables to secure values: {env_vars}. "
                    "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
                )
            if self.persistence == "memory":
                raise RuntimeError(
                    f"In-memory persistence is not allowed in '{self.environment}' environment. "
                    "Set RBAC_PERSISTENCE to 'json' or 'sql'."
                )

        if insecure_fields:
            warnings.warn(
                "Using insecure default audit key — set RBAC_AUDIT_HMAC_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> RBACSettings:
    settings = RBACSettings()
    settings.validate_for_production()
    return settings
