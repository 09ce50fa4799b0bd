from typing import Iterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller
from busconnect.infrastructure.db.session import SessionLocal
from busconnect.infrastructure.gateways.paystack_client import PaystackClient
from busconnect.infrastructure.identity import ProfileIdentityLookup
from busconnect.infrastructure.realtime.change_feed import SeatChangeFeed


_change_feed = SeatChangeFeed(SessionLocal).install()


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_change_feed() -> SeatChangeFeed:
    return _change_feed


def get_current_caller(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Caller:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()

    caller = ProfileIdentityLookup(db).resolve(token)
    if caller is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller


def get_paystack_client(
    settings: Settings = Depends(get_settings),
) -> Iterator[PaystackClient]:
    if not settings.paystack_secret_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Paystack secret key not configured",
        )

    client = PaystackClient(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        timeout_seconds=settings.paystack_timeout_seconds,
    )
    try:
        yield client
    finally:
        client.close()
