class LinkVaultError(Exception):
    """Base error serialized at the route boundary as ``{error, details, hint, action}``."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message=None, *, code=None, status_code=None, details=None, hint=None, action=None):
        self.message = message or self.code
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        self.hint = hint
        self.action = action
        super().__init__(self.message)

    def to_dict(self):
        body = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        if self.hint:
            body["hint"] = self.hint
        if self.action:
            body["action"] = self.action
        return body


class ConfigurationError(LinkVaultError):
    status_code = 500
    code = "configuration_error"

    def __init__(self, missing, hint=None):
        if isinstance(missing, str):
            missing = [missing]
        self.missing = list(missing)
        super().__init__(
            "Missing configuration: " + ", ".join(self.missing),
            details={"missing": self.missing},
            hint=hint or "Set the listed environment variables and restart the service.",
        )


class ValidationError(LinkVaultError):
    status_code = 400
    code = "invalid_payload"


class NotFoundError(LinkVaultError):
    status_code = 404
    code = "not_found"


class ConflictError(LinkVaultError):
    status_code = 409
    code = "conflict"


class AuthenticationError(LinkVaultError):
    status_code = 401
    code = "unauthorized"


class UpstreamApiError(LinkVaultError):
    """Non-2xx answer from the Whop API."""

    code = "upstream_error"

    def __init__(self, message, upstream_status, body=None, **kwargs):
        self.upstream_status = upstream_status
        self.body = body
        kwargs.setdefault("details", body)
        status = upstream_status if 400 <= (upstream_status or 0) < 500 else 502
        kwargs.setdefault("status_code", status)
        super().__init__(message, **kwargs)


class UpstreamContractError(LinkVaultError):
    """A 2xx Whop response that does not have the expected shape."""

    status_code = 502
    code = "upstream_contract_error"


class TokenExchangeError(UpstreamApiError):
    code = "token_exchange_failed"


class TokenRefreshError(LinkVaultError):
    status_code = 401
    code = "token_refresh_failed"

    def __init__(self, message, **kwargs):
        kwargs.setdefault("action", "oauth_required")
        kwargs.setdefault("hint", "Reinstall the app to grant a new authorization.")
        super().__init__(message, **kwargs)


class ProvisioningError(LinkVaultError):
    status_code = 403
    code = "provisioning_failed"


class CheckoutUnavailableError(LinkVaultError):
    status_code = 502
    code = "checkout_unavailable"
