from contextlib import contextmanager
import os
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from loginguard.models import User, UserModel, Base
from loginguard.security import hash_password, verify_password

db_url = "sqlite:///./loginguard.db"
engine = None
SessionLocal = None

def init_db(url: str):
    global db_url, engine, SessionLocal
    db_url = url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}

    engine = create_engine(url, connect_args=connect_args)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)


def dispose_db():
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None


@contextmanager
def get_session():
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

def create_user(username: str, password: str, pepper: str, hash_mode: str = "argon2id") -> User:
    salt = os.urandom(16).hex()
    hashed_password = hash_password(password, salt, pepper, hash_mode)

    with get_session() as session:
        user_model = UserModel(
            username=username,
            password=hashed_password,
            salt=salt,
            hash_mode=hash_mode,
        )
        session.add(user_model)
        session.flush()
        return User.from_orm_model(user_model)

def get_user(username: str) -> User | None:
    with get_session() as session:
        stmt = select(UserModel).where(UserModel.username == username)
        user_model = session.execute(stmt).scalar_one_or_none()
        if user_model:
            return User.from_orm_model(user_model)
        return None


class LocalCredentialVerifier:
    """Checks a username/password pair against the users table."""

    def __init__(self, pepper: str, default_hash_mode: str = "argon2id"):
        self.pepper = pepper
        self.default_hash_mode = default_hash_mode

    def __call__(self, username: str, password: str) -> bool:
        user = get_user(username)
        if user is None:
            return False
        mode = user.hash_mode if user.hash_mode is not None else self.default_hash_mode
        return verify_password(password, user.salt, self.pepper, user.password, mode)
