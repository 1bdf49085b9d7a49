from __future__ import annotations

"""HTTP API for the secret key contract, wrapped in `{success, data, message}` envelopes."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from chatstats_dashboard.credentials import COOKIE_NAME
from chatstats_dashboard.telemetry import sanitize_actor_id

from .codes import LINK_TOKEN_TTL_SECONDS, CooldownError, DeliveryError
from .service import KeyServerService


TRACE_HEADER = "X-Chatstats-Trace-Id"


class SaveKeyRequest(BaseModel):
    """Payload for `/api/save-secret-key`; replacing a key needs the old one or a verified code."""

    userId: str = Field(min_length=1, max_length=20)
    secretKey: str = Field(min_length=1, max_length=256)
    oldSecretKey: str | None = Field(default=None, max_length=256)
    verificationCode: str | None = Field(default=None, max_length=12)


class ValidateKeyRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=20)
    secretKey: str = Field(min_length=1, max_length=256)


class SendCodeRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=20)


class VerifyCodeRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=20)
    code: str = Field(min_length=1, max_length=12)


class GenerateTokenRequest(BaseModel):
    """Bot-side request for a dashboard link token."""

    userId: str = Field(min_length=1, max_length=20)
    userName: str | None = Field(default=None, max_length=80)


def envelope(data: Any = None, message: str = "", *, success: bool = True) -> dict[str, Any]:
    return {"success": success, "data": data, "message": message}


def create_app(service: KeyServerService) -> FastAPI:
    """Create key server routes backed by `KeyServerService`."""

    app = FastAPI(title="Chatstats Key Server", version="0.1")

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(TRACE_HEADER) or "").strip()
        trace_id = sanitize_actor_id(incoming) if incoming else f"keyserver:{uuid4()}"
        if not trace_id or trace_id == "unknown":
            trace_id = f"keyserver:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.telemetry.log_event(
                "risk.flagged",
                actor="system",
                actor_id="keyserver:unknown",
                trace_id=trace_id,
                data={
                    "reason": "keyserver_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                },
            )
            response = JSONResponse(
                status_code=500,
                content={**envelope(None, "Internal server error", success=False), "trace_id": trace_id},
            )
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(None, str(exc.detail), success=False),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        missing = sorted({str(err.get("loc", ["", ""])[-1]) for err in exc.errors()})
        return JSONResponse(
            status_code=400,
            content=envelope(None, f"Invalid or missing parameters: {', '.join(missing)}", success=False),
        )

    def request_trace_id(request: Request) -> str:
        value = getattr(request.state, "trace_id", None)
        if isinstance(value, str) and value:
            return value
        return f"keyserver:{uuid4()}"

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return envelope({"status": "ok", "version": "0.1"})

    @app.get("/api/current-user")
    def current_user(request: Request, userId: str | None = None, token: str | None = None) -> JSONResponse:
        payload, set_cookie = service.current_user(
            cookie_account=request.cookies.get(COOKIE_NAME),
            query_account=userId,
            token=token,
        )
        response = JSONResponse(content=envelope(payload))
        if set_cookie:
            response.set_cookie(
                COOKIE_NAME,
                set_cookie,
                max_age=LINK_TOKEN_TTL_SECONDS,
                httponly=True,
                samesite="lax",
            )
        return response

    @app.post("/api/generate-token")
    def generate_token(req: GenerateTokenRequest) -> dict[str, Any]:
        try:
            issued = service.issue_link(req.userId, user_name=req.userName)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return envelope({"token": issued["token"], "expiresIn": issued["expires_in"] * 1000})

    @app.get("/api/secret-key/{user_id}")
    def get_secret_key(user_id: str) -> dict[str, Any]:
        try:
            value = service.get_secret_key(user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        return envelope({"secretKey": value, "hasExistingKey": True})

    @app.post("/api/save-secret-key")
    def save_secret_key(req: SaveKeyRequest, request: Request) -> dict[str, Any]:
        try:
            service.save_secret_key(
                req.userId,
                req.secretKey,
                old_secret_key=req.oldSecretKey,
                verification_code=req.verificationCode,
                trace_id=request_trace_id(request),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return envelope(None, "Secret key saved.")

    @app.post("/api/validate-secret-key")
    def validate_secret_key(req: ValidateKeyRequest) -> dict[str, Any]:
        try:
            valid, message = service.validate_secret_key(req.userId, req.secretKey)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return envelope({"valid": valid}, message)

    @app.post("/api/send-verification-code")
    def send_verification_code(req: SendCodeRequest, request: Request) -> dict[str, Any]:
        try:
            service.send_code(req.userId, trace_id=request_trace_id(request))
        except CooldownError as exc:
            raise HTTPException(
                status_code=429,
                detail=str(exc),
                headers={"Retry-After": str(exc.retry_after)},
            ) from exc
        except DeliveryError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return envelope(None, "Verification code sent.")

    @app.post("/api/verify-code")
    def verify_code(req: VerifyCodeRequest) -> dict[str, Any]:
        try:
            valid, message = service.verify_code(req.userId, req.code)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return envelope({"valid": valid}, message)

    return app
