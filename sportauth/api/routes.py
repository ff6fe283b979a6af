from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from sportauth.api.schemas import (
    AccountResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    ApiKeyUpdateRequest,
    AuditEventResponse,
    AuditPageResponse,
    AuthResponse,
    Envelope,
    IssuedApiKeyResponse,
    LoginRequest,
    LogoutRequest,
    MfaEnableRequest,
    MfaLoginRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    OAuthProfileRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileResponse,
    RegisterRequest,
    ResendVerificationRequest,
    SecurityMetricsResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenRequest,
    TokenResponse,
)
from sportauth.logging import get_correlation_id, get_logger
from sportauth.service.api_keys import IssuedApiKey
from sportauth.service.audit import RequestContext
from sportauth.service.auth import MfaChallenge
from sportauth.service.errors import AuthenticationError, ForbiddenError
from sportauth.service.events import Outcome
from sportauth.service.oauth import OAuthProfile
from sportauth.service.runtime import get_runtime
from sportauth.service.sessions import SessionView
from sportauth.service.tokens import TokenPair
from sportauth.storage.models import (
    Account,
    ApiKey,
    AuditAction,
    AuditEvent,
    AuditFilters,
    Profile,
    Severity,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ADMIN_ROLE = "admin"


# -- helpers ------------------------------------------------------------------


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        session_id=get_correlation_id(),
    )


def _dispatch(outcome: Outcome):
    """Publish the outcome's domain events and hand back its value."""
    get_runtime().events.publish(outcome.events)
    return outcome.value


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )


def _account_response(account: Account, profile: Optional[Profile] = None) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        role=account.role,
        is_active=account.is_active,
        is_email_verified=account.is_email_verified,
        mfa_enabled=account.mfa.enabled,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
        profile=(
            ProfileResponse(
                id=profile.id,
                username=profile.username,
                first_name=profile.first_name,
                last_name=profile.last_name,
                avatar=profile.avatar,
            )
            if profile
            else None
        ),
        linked_providers=[s.provider for s in account.social_logins],
    )


def _session_response(view: SessionView) -> SessionResponse:
    return SessionResponse(
        index=view.index,
        token=view.token_hint,
        issued_at=view.issued_at,
        last_used_at=view.last_used_at,
        user_agent=view.user_agent,
        ip_address=view.ip_address,
    )


def _event_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        action=event.action.value,
        resource=event.resource.value,
        status=event.status.value,
        severity=event.severity.value,
        timestamp=event.timestamp,
        account_id=event.account_id,
        resource_id=event.resource_id,
        details=event.details,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        session_id=event.session_id,
        api_key_id=event.api_key_id,
        acknowledged_at=event.acknowledged_at,
        acknowledged_by=event.acknowledged_by,
    )


def _is_admin(account: Account) -> bool:
    return account.role == ADMIN_ROLE


async def get_user(authorization: Optional[str] = Header(None)) -> Account:
    """Resolve the bearer access token to an active account."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authentication required")
    return get_runtime().auth.resolve_access_token(token.strip())


async def require_oauth_callback(
    x_oauth_callback_secret: Optional[str] = Header(None, alias="X-OAuth-Callback-Secret"),
) -> None:
    """Provider profiles are only accepted from the trusted callback layer."""
    expected = get_runtime().settings.oauth_callback_secret
    if not expected:
        raise ForbiddenError("OAuth callback is not configured")
    if not x_oauth_callback_secret or not hmac.compare_digest(
        x_oauth_callback_secret.encode(), expected.encode()
    ):
        raise ForbiddenError("Invalid OAuth callback credentials")


@dataclass(frozen=True)
class Caller:
    """Who is behind a request: a bearer session or a service API key."""

    account: Account
    api_key: Optional[ApiKey] = None


def api_key_or_bearer(permission: Optional[str] = None):
    """Accept ``X-API-Key`` (checked for ``permission``) or a bearer access token."""

    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    ) -> Caller:
        if x_api_key:
            principal = await get_runtime().api_keys.authenticate(
                x_api_key, permission=permission, context=_request_context(request)
            )
            return Caller(account=principal.account, api_key=principal.key)
        return Caller(account=await get_user(authorization))

    return dependency


# -- auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account with email and password and open its first session.

    Raises:
        400: Weak password or malformed input
        403: Signup disabled
        409: Email or username already in use
    """
    runtime = get_runtime()
    issued = _dispatch(
        await runtime.auth.register(
            body.email,
            body.password,
            username=body.username,
            first_name=body.first_name,
            last_name=body.last_name,
            context=_request_context(request),
        )
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_response(issued.account, issued.profile),
            tokens=_token_response(issued.tokens),
            is_new_account=True,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Password login. Accounts with MFA get a challenge token instead of tokens."""
    runtime = get_runtime()
    result = _dispatch(
        await runtime.auth.login(body.email, body.password, context=_request_context(request))
    )
    if isinstance(result, MfaChallenge):
        return Envelope(
            status="ok",
            data=AuthResponse(mfa_required=True, challenge_token=result.challenge_token),
        )
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_response(result.account, result.profile),
            tokens=_token_response(result.tokens),
        ),
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def complete_mfa_login(body: MfaLoginRequest, request: Request):
    runtime = get_runtime()
    issued = _dispatch(
        await runtime.auth.complete_mfa_login(
            body.challenge_token, body.code, context=_request_context(request)
        )
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_response(issued.account, issued.profile),
            tokens=_token_response(issued.tokens),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token. Replaying a rotated token ends every session."""
    runtime = get_runtime()
    pair = _dispatch(
        await runtime.auth.refresh(body.refresh_token, context=_request_context(request))
    )
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    removed = _dispatch(
        await runtime.auth.logout(
            account.id,
            body.refresh_token if body else None,
            context=_request_context(request),
        )
    )
    return Envelope(status="ok", data={"message": "Logged out", "sessions_removed": removed})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    account: Account = Depends(get_user),
):
    """Change the password; every session of the account is ended."""
    runtime = get_runtime()
    _dispatch(
        await runtime.auth.change_password(
            account.id,
            body.current_password,
            body.new_password,
            context=_request_context(request),
        )
    )
    return Envelope(status="ok", data={"message": "Password changed"})


@router.post("/auth/deactivate", response_model=Envelope, tags=["auth"])
async def deactivate_account(
    body: PasswordConfirmRequest,
    request: Request,
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    _dispatch(
        await runtime.auth.deactivate_account(
            account.id, body.password, context=_request_context(request)
        )
    )
    return Envelope(status="ok", data={"message": "Account deactivated"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_account(caller: Caller = Depends(api_key_or_bearer("read:users"))):
    runtime = get_runtime()
    view = _dispatch(await runtime.auth.get_profile(caller.account.id))
    return Envelope(status="ok", data=_account_response(view.account, view.profile))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Always succeeds so callers cannot learn which emails exist."""
    runtime = get_runtime()
    _dispatch(
        await runtime.auth.request_password_reset(body.email, context=_request_context(request))
    )
    return Envelope(
        status="ok",
        data={"message": "If the email exists, a password reset link has been sent"},
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    _dispatch(
        await runtime.auth.reset_password(
            body.token, body.new_password, context=_request_context(request)
        )
    )
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/auth/password/reset/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(body: TokenRequest):
    runtime = get_runtime()
    valid = await runtime.auth.validate_reset_token(body.token)
    return Envelope(status="ok", data={"valid": valid})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest, request: Request):
    runtime = get_runtime()
    account = _dispatch(
        await runtime.auth.verify_email(body.token, context=_request_context(request))
    )
    return Envelope(
        status="ok",
        data={"message": "Email verified", "account": _account_response(account)},
    )


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, request: Request):
    runtime = get_runtime()
    _dispatch(
        await runtime.auth.resend_verification(body.email, context=_request_context(request))
    )
    return Envelope(
        status="ok",
        data={"message": "If the email needs verification, a link has been sent"},
    )


@router.post("/auth/email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(request: Request, account: Account = Depends(get_user)):
    runtime = get_runtime()
    _dispatch(
        await runtime.auth.request_email_verification(
            account.id, context=_request_context(request)
        )
    )
    return Envelope(status="ok", data={"message": "Verification email sent"})


# -- mfa ----------------------------------------------------------------------


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(request: Request, account: Account = Depends(get_user)):
    """Generate a secret, QR code and backup codes. Nothing is stored yet."""
    runtime = get_runtime()
    setup = _dispatch(await runtime.mfa.setup(account.id, context=_request_context(request)))
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            qr_code=setup.qr_code,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(
    body: MfaEnableRequest,
    request: Request,
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    status = _dispatch(
        await runtime.mfa.enable(
            account.id,
            body.secret,
            body.code,
            body.backup_codes,
            context=_request_context(request),
        )
    )
    return Envelope(status="ok", data=MfaStatusResponse(**status.as_dict()))


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: PasswordConfirmRequest,
    request: Request,
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    status = _dispatch(
        await runtime.mfa.disable(account.id, body.password, context=_request_context(request))
    )
    return Envelope(status="ok", data=MfaStatusResponse(**status.as_dict()))


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    body: PasswordConfirmRequest,
    request: Request,
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    codes = _dispatch(
        await runtime.mfa.regenerate_backup_codes(
            account.id, body.password, context=_request_context(request)
        )
    )
    return Envelope(status="ok", data={"backup_codes": codes})


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(account: Account = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.mfa.status(account.id)
    return Envelope(status="ok", data=MfaStatusResponse(**status.as_dict()))


# -- sessions -----------------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(account: Account = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_sessions(account.id)
    return Envelope(
        status="ok", data={"sessions": [_session_response(s) for s in sessions]}
    )


@router.delete("/sessions/{index}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    index: int = Path(..., ge=0),
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    revoked = runtime.sessions.revoke_session(
        account.id, index, context=_request_context(request)
    )
    return Envelope(status="ok", data={"revoked": _session_response(revoked)})


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(request: Request, account: Account = Depends(get_user)):
    runtime = get_runtime()
    count = runtime.sessions.revoke_all_sessions(account.id, context=_request_context(request))
    return Envelope(status="ok", data={"sessions_revoked": count})


# -- oauth --------------------------------------------------------------------


def _oauth_profile(body: OAuthProfileRequest) -> OAuthProfile:
    return OAuthProfile(
        provider=body.provider,
        provider_id=body.provider_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        display_name=body.display_name,
        avatar=body.avatar,
    )


@router.post(
    "/oauth/authenticate",
    response_model=Envelope,
    tags=["oauth"],
    dependencies=[Depends(require_oauth_callback)],
)
async def oauth_authenticate(body: OAuthProfileRequest, request: Request):
    runtime = get_runtime()
    issued = _dispatch(
        await runtime.oauth.authenticate(_oauth_profile(body), context=_request_context(request))
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_response(issued.account, issued.profile),
            tokens=_token_response(issued.tokens),
            is_new_account=issued.is_new_account,
        ),
    )


@router.post(
    "/oauth/link",
    response_model=Envelope,
    tags=["oauth"],
    dependencies=[Depends(require_oauth_callback)],
)
async def oauth_link(
    body: OAuthProfileRequest,
    request: Request,
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    identity = _dispatch(
        await runtime.oauth.link(
            account.id, _oauth_profile(body), context=_request_context(request)
        )
    )
    return Envelope(
        status="ok",
        data={"provider": identity.provider, "linked_at": identity.linked_at.isoformat()},
    )


@router.delete("/oauth/unlink/{provider}", response_model=Envelope, tags=["oauth"])
async def oauth_unlink(
    request: Request,
    provider: str = Path(..., max_length=32),
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    _dispatch(
        await runtime.oauth.unlink(account.id, provider, context=_request_context(request))
    )
    return Envelope(status="ok", data={"message": f"{provider} account unlinked"})


@router.get("/oauth/linked", response_model=Envelope, tags=["oauth"])
async def oauth_linked(account: Account = Depends(get_user)):
    runtime = get_runtime()
    providers = await runtime.oauth.linked_accounts(account.id)
    return Envelope(status="ok", data={"providers": providers})


# -- security -----------------------------------------------------------------


@router.get("/security/audit-logs", response_model=Envelope, tags=["security"])
async def audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    severity: Optional[Severity] = Query(None),
    action: Optional[AuditAction] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    account_id: Optional[str] = Query(None, max_length=128),
    account: Account = Depends(get_user),
):
    """Audit trail, newest first. Non-admins only ever see their own events."""
    runtime = get_runtime()
    scope = account_id if _is_admin(account) else account.id
    result = runtime.audit.query(
        AuditFilters(account_id=scope, severity=severity, action=action, start=start, end=end),
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=AuditPageResponse(
            events=[_event_response(e) for e in result.events],
            total=result.total,
            page=result.page,
            limit=result.limit,
            pages=result.pages,
        ),
    )


@router.get("/security/metrics", response_model=Envelope, tags=["security"])
async def security_metrics(
    period: str = Query("7d", max_length=8),
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    metrics = runtime.audit.metrics(
        period, account_id=None if _is_admin(account) else account.id
    )
    return Envelope(
        status="ok",
        data=SecurityMetricsResponse(
            period=metrics.period,
            start=metrics.start,
            end=metrics.end,
            total_events=metrics.total_events,
            failed_logins=metrics.failed_logins,
            successful_logins=metrics.successful_logins,
            login_success_rate=metrics.login_success_rate,
            events_by_severity=metrics.events_by_severity,
            mfa_events=metrics.mfa_events,
            top_failed_ips=metrics.top_failed_ips,
        ),
    )


@router.get("/security/alerts", response_model=Envelope, tags=["security"])
async def security_alerts(
    limit: int = Query(20, ge=1, le=100),
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    alerts: List[AuditEvent] = runtime.audit.alerts(
        limit, account_id=None if _is_admin(account) else account.id
    )
    return Envelope(
        status="ok", data={"alerts": [_event_response(e) for e in alerts], "total": len(alerts)}
    )


@router.post("/security/alerts/{event_id}/acknowledge", response_model=Envelope, tags=["security"])
async def acknowledge_alert(
    request: Request,
    event_id: str = Path(..., max_length=128),
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    acknowledged = runtime.audit.acknowledge(
        event_id,
        account.id,
        account_scope=None if _is_admin(account) else account.id,
        context=_request_context(request),
    )
    return Envelope(status="ok", data=_event_response(acknowledged))


@router.get("/security/dashboard", response_model=Envelope, tags=["security"])
async def security_dashboard(account: Account = Depends(get_user)):
    runtime = get_runtime()
    dashboard = runtime.audit.dashboard(None if _is_admin(account) else account.id)
    dashboard["recent_events"] = [_event_response(e) for e in dashboard["recent_events"]]
    return Envelope(status="ok", data=dashboard)


# -- api keys -----------------------------------------------------------------


def _api_key_response(key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=key.id,
        name=key.name,
        key_prefix=key.key_prefix,
        permissions=key.permissions,
        is_active=key.is_active,
        max_requests=key.max_requests,
        window_seconds=key.window_seconds,
        allowed_ips=key.allowed_ips,
        expires_at=key.expires_at,
        last_used_at=key.last_used_at,
        created_at=key.created_at,
    )


def _issued_response(issued: IssuedApiKey) -> IssuedApiKeyResponse:
    return IssuedApiKeyResponse(api_key=_api_key_response(issued.key), key=issued.secret)


@router.post("/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
async def create_api_key(
    body: ApiKeyCreateRequest, request: Request, account: Account = Depends(get_user)
):
    """Mint a service key. The raw key is in this response and nowhere else."""
    issued = get_runtime().api_keys.create(
        account.id,
        body.name,
        permissions=body.permissions,
        allowed_ips=body.allowed_ips,
        expires_in_days=body.expires_in_days,
        max_requests=body.max_requests,
        window_seconds=body.window_seconds,
        context=_request_context(request),
    )
    return Envelope(status="ok", data=_issued_response(issued))


@router.get("/api-keys", response_model=Envelope, tags=["api-keys"])
async def list_api_keys(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    account: Account = Depends(get_user),
):
    result = get_runtime().api_keys.list(account.id, page=page, limit=limit)
    return Envelope(
        status="ok",
        data={
            "api_keys": [_api_key_response(k) for k in result.keys],
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "pages": result.pages,
        },
    )


@router.get("/api-keys/stats", response_model=Envelope, tags=["api-keys"])
async def api_key_stats(account: Account = Depends(get_user)):
    return Envelope(status="ok", data=get_runtime().api_keys.stats(account.id))


@router.get("/api-keys/whoami", response_model=Envelope, tags=["api-keys"])
async def api_key_whoami(caller: Caller = Depends(api_key_or_bearer())):
    return Envelope(
        status="ok",
        data={
            "account_id": caller.account.id,
            "auth_method": "api_key" if caller.api_key else "bearer",
            "api_key_id": caller.api_key.id if caller.api_key else None,
            "permissions": caller.api_key.permissions if caller.api_key else [],
        },
    )


@router.get("/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
async def get_api_key(
    key_id: str = Path(..., max_length=128), account: Account = Depends(get_user)
):
    return Envelope(
        status="ok", data=_api_key_response(get_runtime().api_keys.get(account.id, key_id))
    )


@router.patch("/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
async def update_api_key(
    body: ApiKeyUpdateRequest,
    request: Request,
    key_id: str = Path(..., max_length=128),
    account: Account = Depends(get_user),
):
    updated = get_runtime().api_keys.update(
        account.id,
        key_id,
        name=body.name,
        permissions=body.permissions,
        allowed_ips=body.allowed_ips,
        is_active=body.is_active,
        max_requests=body.max_requests,
        window_seconds=body.window_seconds,
        context=_request_context(request),
    )
    return Envelope(status="ok", data=_api_key_response(updated))


@router.post("/api-keys/{key_id}/regenerate", response_model=Envelope, tags=["api-keys"])
async def regenerate_api_key(
    request: Request,
    key_id: str = Path(..., max_length=128),
    account: Account = Depends(get_user),
):
    issued = get_runtime().api_keys.regenerate(
        account.id, key_id, context=_request_context(request)
    )
    return Envelope(status="ok", data=_issued_response(issued))


@router.delete("/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
async def delete_api_key(
    request: Request,
    key_id: str = Path(..., max_length=128),
    account: Account = Depends(get_user),
):
    get_runtime().api_keys.revoke(account.id, key_id, context=_request_context(request))
    return Envelope(status="ok", data={"message": "API key deleted"})
