from dataclasses import dataclass, fields
import json
import os

ENV_PREFIX = "LOGINGUARD_"


def _bool(env_val: str, default: bool) -> bool:
    if env_val is None:
        return default
    return env_val.lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    db_url: str = "sqlite:///./loginguard.db"
    attempts_log_file: str = "attempts.log"
    debug_logging: bool = False
    pepper: str = "pepper"
    default_hash_mode: str = "argon2id"
    admin_token: str = ""

    store_backend: str = "sql"
    storage_key_prefix: str = "login_attempts_"

    enable_lockout: bool = True
    max_attempts: int = 5
    lockout_duration_s: int = 15 * 60
    reset_failures_after_lockout: bool = False
    fail_closed: bool = True

    enable_rate_limit: bool = True
    rate_limit_attempts: int = 20
    rate_limit_window_s: int = 60


def _coerce(raw: str, current):
    if isinstance(current, bool):
        return _bool(raw, current)
    if isinstance(current, int):
        return int(raw)
    return raw


def load_config(path: str | None = None, environ: dict | None = None) -> Config:
    cfg = Config()
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for k, v in data.items():
            if hasattr(cfg, k):
                setattr(cfg, k, v)

    environ = os.environ if environ is None else environ
    for field in fields(cfg):
        raw = environ.get(ENV_PREFIX + field.name.upper())
        if raw is not None:
            setattr(cfg, field.name, _coerce(raw, getattr(cfg, field.name)))

    return cfg


def get_protection_flags(cfg: Config) -> list[str]:
    flags = []
    if cfg.enable_rate_limit:
        flags.append("rate_limit")
    if cfg.enable_lockout:
        flags.append("lockout")
    if cfg.fail_closed:
        flags.append("fail_closed")
    return flags
