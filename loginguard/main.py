import hmac
import time
from typing import Callable

from fastapi import FastAPI, HTTPException, Request, Response

from loginguard import db
from loginguard.attempt_logger import AttemptLogger
from loginguard.attempt_tracker import UNAVAILABLE_MESSAGE, AttemptTracker, normalize_identifier, now_ms
from loginguard.config import Config, get_protection_flags, load_config
from loginguard.models import (
    AdminResetResponse,
    AttemptStatusResponse,
    LoginRequest,
    LoginResponse,
    PasswordCheckRequest,
    PolicyResult,
    RegisterRequest,
    RegisterResponse,
)
from loginguard.policy import validate_password
from loginguard.rate_limit import RateLimiter
from loginguard.security import HASH_MODES
from loginguard.store import AttemptStore, AttemptStoreError, build_store


def create_app(
    config: Config | None = None,
    store: AttemptStore | None = None,
    verifier: Callable[[str, str], bool] | None = None,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    """Build the service. Run with ``uvicorn loginguard.main:create_app --factory``."""
    config = config or load_config("config.json")
    logger = AttemptLogger.from_config(config)
    db.init_db(config.db_url)
    store = store or build_store(config.store_backend, logger)
    tracker = AttemptTracker.from_config(config, store, clock=clock, logger=logger)
    rate_limiter = RateLimiter(config.rate_limit_attempts, config.rate_limit_window_s)
    verifier = verifier or db.LocalCredentialVerifier(config.pepper, config.default_hash_mode)
    protection_flags = get_protection_flags(config)

    app = FastAPI(title="Login Guard")
    app.state.config = config
    app.state.tracker = tracker
    app.state.rate_limiter = rate_limiter

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/password/validate", response_model=PolicyResult)
    def password_validate(req: PasswordCheckRequest):
        return validate_password(req.password)

    @app.post("/register", response_model=RegisterResponse)
    def register(req: RegisterRequest):
        username = normalize_identifier(req.username)
        if db.get_user(username):
            raise HTTPException(status_code=400, detail="Username already exists")
        policy = validate_password(req.password)
        if not policy.valid:
            raise HTTPException(status_code=400, detail=policy.message)
        hash_mode = req.hash_mode if req.hash_mode is not None else config.default_hash_mode
        if hash_mode not in HASH_MODES:
            raise HTTPException(status_code=400, detail=f"Unsupported hash mode: {hash_mode}")

        db.create_user(username, req.password, config.pepper, hash_mode)
        logger.log("register", username, "created", extra={"hash_mode": hash_mode})
        return RegisterResponse(result="created")

    @app.post("/login", response_model=LoginResponse)
    def login(req: LoginRequest, request: Request, response: Response):
        start_time = time.perf_counter()
        identifier = normalize_identifier(req.username)

        def respond(result: str, status_code: int, retry_after: int | None = None, message: str | None = None, headers=None):
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.log("login", identifier, result, latency_ms=latency_ms)
            response.status_code = status_code
            for name, value in (headers or {}).items():
                response.headers[name] = value
            return LoginResponse(
                result=result,
                protection_flags=protection_flags,
                retry_after_seconds=retry_after,
                message=message,
                latency_ms=latency_ms,
            )

        if config.enable_rate_limit:
            client_key = request.client.host if request.client else "unknown"
            limit = rate_limiter.hit(client_key)
            if not limit.allowed:
                headers = rate_limiter.headers(limit)
                return respond(
                    "rate_limit_exceeded", 429, int(headers["Retry-After"]), "Too many requests.", headers
                )

        def verify() -> bool:
            return verifier(identifier, req.password)

        if not config.enable_lockout:
            if verify():
                return respond("success", 200)
            return respond("invalid_credentials", 401, message="Invalid username or password")

        outcome = tracker.try_attempt(identifier, verify)
        if not outcome.allowed:
            if outcome.retry_after_seconds is None:
                return respond("unavailable", 503, message=outcome.message)
            headers = {"Retry-After": str(outcome.retry_after_seconds)}
            return respond("locked_out", 429, outcome.retry_after_seconds, outcome.message, headers)
        if outcome.success:
            return respond("success", 200)
        return respond(
            "invalid_credentials",
            401,
            outcome.retry_after_seconds,
            outcome.message or "Invalid username or password",
        )

    def require_admin(admin_token: str) -> None:
        if not config.admin_token or not hmac.compare_digest(admin_token.encode(), config.admin_token.encode()):
            raise HTTPException(status_code=403, detail="invalid admin token")

    @app.get("/attempts/{identifier}", response_model=AttemptStatusResponse)
    def attempt_status(identifier: str, admin_token: str = ""):
        require_admin(admin_token)
        identifier = normalize_identifier(identifier)
        try:
            record = tracker.status(identifier)
        except AttemptStoreError:
            raise HTTPException(status_code=503, detail=UNAVAILABLE_MESSAGE)
        decision = tracker.can_attempt(identifier)
        return AttemptStatusResponse(
            identifier=identifier,
            allowed=decision.allowed,
            failure_count=record.failure_count if record else 0,
            locked_until=record.locked_until if record else None,
            retry_after_seconds=decision.retry_after_seconds,
        )

    @app.delete("/admin/attempts/{identifier}", response_model=AdminResetResponse)
    def admin_reset(identifier: str, admin_token: str = ""):
        require_admin(admin_token)
        identifier = normalize_identifier(identifier)
        try:
            tracker.reset(identifier)
        except AttemptStoreError:
            raise HTTPException(status_code=503, detail=UNAVAILABLE_MESSAGE)
        logger.log("admin_reset", identifier, "reset")
        return AdminResetResponse(identifier=identifier, result="reset")

    return app
