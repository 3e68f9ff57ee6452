"""Account store backed by SQLAlchemy (PostgreSQL in production, SQLite locally)."""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from auth.exceptions import AccountConflict
from db.engine import Base, SessionLocal
from db.models.account import Account


class SqlAccountStore:
    """Account store backed by a relational database."""

    def __init__(self, session_factory: sessionmaker | None = None, create_schema: bool = True) -> None:
        self._session_factory = session_factory or SessionLocal
        if create_schema:
            Base.metadata.create_all(bind=self._session_factory.kw["bind"], tables=[Account.__table__])

    def _get_session(self) -> Session:
        return self._session_factory()

    async def get_by_id(self, account_id: str) -> dict | None:
        with self._get_session() as db:
            account = db.get(Account, account_id)
            return account.to_dict() if account else None

    async def get_by_phone(self, phone: str) -> dict | None:
        with self._get_session() as db:
            account = db.execute(
                select(Account).where(Account.phone == phone)
            ).scalar_one_or_none()
            return account.to_dict() if account else None

    async def get_by_email(self, email: str) -> dict | None:
        with self._get_session() as db:
            account = db.execute(
                select(Account).where(Account.email == email.lower())
            ).scalar_one_or_none()
            return account.to_dict() if account else None

    async def create_account(self, data: dict) -> dict:
        with self._get_session() as db:
            account = Account(
                phone=data["phone"],
                email=data["email"].lower() if data.get("email") else None,
            )
            db.add(account)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise AccountConflict("Phone number or email is already registered") from exc
            db.refresh(account)
            return account.to_dict()

    async def update_account(self, account_id: str, updates: dict) -> dict:
        with self._get_session() as db:
            account = db.get(Account, account_id)
            if not account:
                raise ValueError("Account not found")
            if updates.get("email"):
                account.email = updates["email"].lower()
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise AccountConflict("Email is already registered") from exc
            db.refresh(account)
            return account.to_dict()

    async def change_phone(self, account_id: str, expected_phone: str, new_phone: str) -> dict:
        with self._get_session() as db:
            try:
                result = db.execute(
                    update(Account)
                    .where(Account.id == account_id, Account.phone == expected_phone)
                    .values(phone=new_phone)
                )
                if result.rowcount != 1:
                    db.rollback()
                    raise AccountConflict("Phone number changed during verification")
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise AccountConflict(
                    "New phone number is already registered by another account"
                ) from exc
            account = db.get(Account, account_id)
            return account.to_dict()
