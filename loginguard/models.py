from pydantic import BaseModel, Field
from sqlalchemy import BigInteger, Column, Integer, String
from sqlalchemy.orm import DeclarativeBase

class Base(DeclarativeBase):
    pass


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, unique=True, nullable=False)
    password = Column(String, nullable=False)
    salt = Column(String, nullable=False)
    hash_mode = Column(String, nullable=False)


class LoginAttemptModel(Base):
    __tablename__ = "login_attempts"

    key = Column(String, primary_key=True)
    identifier = Column(String, nullable=False)
    failure_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(BigInteger, nullable=False, default=0)
    locked_until = Column(BigInteger, nullable=True)


class User(BaseModel):
    id: int | None = None
    username: str
    password: str
    salt: str
    hash_mode: str | None = Field(default=None)

    @classmethod
    def from_orm_model(cls, orm_user: UserModel) -> "User":
        return cls(
            id=orm_user.id,
            username=orm_user.username,
            password=orm_user.password,
            salt=orm_user.salt,
            hash_mode=orm_user.hash_mode,
        )


class AttemptRecord(BaseModel):
    """Failure counter and lock state for one identifier.

    Timestamps are milliseconds since the epoch.
    """

    identifier: str
    failure_count: int = Field(default=0, ge=0)
    last_attempt_at: int = Field(default=0, ge=0)
    locked_until: int | None = None

    @classmethod
    def from_orm_model(cls, row: LoginAttemptModel) -> "AttemptRecord":
        return cls(
            identifier=row.identifier,
            failure_count=row.failure_count,
            last_attempt_at=row.last_attempt_at,
            locked_until=row.locked_until,
        )

    def is_locked(self, now_ms: int) -> bool:
        return self.locked_until is not None and now_ms < self.locked_until


class PolicyResult(BaseModel):
    valid: bool
    message: str | None = None


class AttemptDecision(BaseModel):
    allowed: bool
    retry_after_seconds: int | None = None
    message: str | None = None


class AttemptOutcome(BaseModel):
    allowed: bool
    success: bool = False
    locked_after: bool = False
    retry_after_seconds: int | None = None
    message: str | None = None


class PasswordCheckRequest(BaseModel):
    password: str


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str
    hash_mode: str | None = Field(default=None, description="argon2id|bcrypt")

class RegisterResponse(BaseModel):
    result: str

class LoginRequest(BaseModel):
    username: str
    password: str

class LoginResponse(BaseModel):
    result: str
    protection_flags: list[str]
    retry_after_seconds: int | None = None
    message: str | None = None
    latency_ms: float | None = None


class AttemptStatusResponse(BaseModel):
    identifier: str
    allowed: bool
    failure_count: int = 0
    locked_until: int | None = None
    retry_after_seconds: int | None = None


class AdminResetResponse(BaseModel):
    identifier: str
    result: str
