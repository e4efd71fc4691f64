"""Provider configuration validation.

Pure functions: each validator takes a resolved config mapping and returns a
ValidationResult. Nothing here raises on bad input; callers decide whether
an invalid result is fatal (initialization) or informational (admin API).
"""

from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlparse

from auth_broker.config.settings import DEFAULT_SESSION_SECRET
from auth_broker.domain.models.auth import ValidationResult

MIN_WEBHOOK_SECRET_LENGTH = 16
MIN_SESSION_SECRET_LENGTH = 32
MIN_API_TIMEOUT_SECONDS = 1
MAX_API_TIMEOUT_SECONDS = 120


def validate_required_fields(config: Optional[Mapping[str, Any]], required_fields, context: str) -> ValidationResult:
    """Check that every required field is present and non-empty"""
    if not isinstance(config, Mapping):
        return ValidationResult(False, f"{context} configuration is required")

    for field_name in required_fields:
        if not config.get(field_name):
            return ValidationResult(False, f"Missing {context} configuration: {field_name}")

    return ValidationResult(True, f"{context} configuration valid")


def is_valid_url(url: Any, require_https: bool = False, allow_localhost: bool = True) -> bool:
    if not isinstance(url, str) or not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    if require_https and parsed.scheme != "https":
        return False
    if not allow_localhost and parsed.hostname in ("localhost", "127.0.0.1"):
        return False
    return True


def validate_oidc_config(config: Mapping[str, Any], production: bool = False) -> ValidationResult:
    result = validate_required_fields(config, ["client_id", "client_secret", "issuer"], "OIDC")
    if not result.valid:
        return result

    if not is_valid_url(config["issuer"], require_https=production):
        return ValidationResult(False, "OIDC issuer must be a valid HTTPS URL")

    if config.get("redirect_uri") and not is_valid_url(config["redirect_uri"]):
        return ValidationResult(False, "OIDC redirect URI must be a valid URL")

    return result


def validate_api_config(config: Mapping[str, Any], production: bool = False) -> ValidationResult:
    result = validate_required_fields(config, ["base_url", "api_key"], "API")
    if not result.valid:
        return result

    if not is_valid_url(config["base_url"], require_https=production):
        return ValidationResult(False, "API base URL must be a valid URL")

    timeout = config.get("timeout")
    if timeout is not None and not (MIN_API_TIMEOUT_SECONDS <= float(timeout) <= MAX_API_TIMEOUT_SECONDS):
        return ValidationResult(
            False,
            f"API timeout must be between {MIN_API_TIMEOUT_SECONDS}s and {MAX_API_TIMEOUT_SECONDS}s",
        )

    return result


def validate_webhook_config(config: Mapping[str, Any], production: bool = False) -> ValidationResult:
    if not isinstance(config, Mapping):
        return ValidationResult(False, "Webhook configuration is required")

    secret = config.get("secret")
    if config.get("enable_signature_validation", True) and not secret:
        return ValidationResult(False, "Missing Webhook configuration: secret")

    if secret and len(secret) < MIN_WEBHOOK_SECRET_LENGTH:
        return ValidationResult(
            False,
            f"Webhook secret must be at least {MIN_WEBHOOK_SECRET_LENGTH} characters long",
        )

    return ValidationResult(True, "Webhook configuration valid")


def validate_local_config(config: Mapping[str, Any], production: bool = False) -> ValidationResult:
    return ValidationResult(True, "Local authentication enabled")


VALIDATION_REGISTRY: dict[str, Callable[..., ValidationResult]] = {
    "authentik": validate_oidc_config,
    "oidc_generic": validate_oidc_config,
    "api_integration": validate_api_config,
    "webhook_integration": validate_webhook_config,
    "local_auth": validate_local_config,
}


def validate_provider_config(provider_id: str, config: Mapping[str, Any], production: bool = False) -> ValidationResult:
    validator = VALIDATION_REGISTRY.get(provider_id)
    if validator is None:
        return ValidationResult(False, f"Unknown provider: {provider_id}")
    return validator(config, production=production)


def validate_session_secret(secret: Optional[str], production: bool) -> ValidationResult:
    if not production:
        return ValidationResult(True, "Session secret accepted")
    if not secret or secret == DEFAULT_SESSION_SECRET:
        return ValidationResult(False, "Missing environment variable: SESSION_SECRET")
    if len(secret) < MIN_SESSION_SECRET_LENGTH:
        return ValidationResult(
            False,
            f"SESSION_SECRET must be at least {MIN_SESSION_SECRET_LENGTH} characters long",
        )
    return ValidationResult(True, "Session secret accepted")


def validate_environment(
    env_vars: Mapping[str, str],
    config: Mapping[str, Any],
    environ: Mapping[str, str],
) -> ValidationResult:
    """Check environment variables backing required fields

    Args:
        env_vars: Required config field -> environment variable name
        config: Resolved config; fields supplied here need no env var
        environ: Environment mapping to check
    """
    for field_name, env_name in env_vars.items():
        if config.get(field_name):
            continue
        if not environ.get(env_name):
            return ValidationResult(False, f"Missing environment variable: {env_name}")

    return ValidationResult(True, "Environment variables valid")


def batch_validate(results: list[ValidationResult]) -> ValidationResult:
    """Fold several validation results into one"""
    failures = [r.message for r in results if not r.valid]
    if failures:
        return ValidationResult(False, "; ".join(failures))
    return ValidationResult(True, "All validations passed")
