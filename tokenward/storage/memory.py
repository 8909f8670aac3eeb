from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation, StaleWriteError
from tokenward.storage.models import (
    Account,
    ExternalIdentity,
    OneTimeTokenRecord,
    RefreshTokenRecord,
    TokenPurpose,
    utcnow,
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """Thread-safe in-memory store for accounts and token records.

    Every read returns a copy and every write goes through a method that holds
    ``_data_lock``, so the read-check-write sequences below are atomic with
    respect to each other. When ``persist`` is set, a JSON snapshot is written
    under ``fs_root/state`` after each mutation and loaded on startup.
    """

    def __init__(self, fs_root: Optional[str] = None, *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.one_time_tokens: Dict[str, OneTimeTokenRecord] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.persist = bool(persist and fs_root)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    accounts=len(self.accounts),
                    refresh_tokens=len(self.refresh_tokens),
                )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        roles: Optional[set[str]] = None,
        enabled: bool = False,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                full_name=full_name,
                roles=set(roles) if roles else {"user"},
                enabled=enabled,
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_email(email))
            if account_id is None:
                return None
            return copy.deepcopy(self.accounts[account_id])

    def get_account_by_identity(self, provider: str, provider_id: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                for identity in account.external_identities:
                    if identity.provider == provider and identity.provider_id == provider_id:
                        return copy.deepcopy(account)
            return None

    def update_account(self, account: Account, expected_version: int) -> Account:
        """Replace the stored account if its version still equals ``expected_version``.

        The stored version is bumped on success and the fresh copy returned.
        Email changes are not supported through this path.
        """
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None:
                raise ConstraintViolation("account not found", {"account_id": account.id})
            if current.version != expected_version:
                raise StaleWriteError(account.id, expected_version, current.version)
            updated = copy.deepcopy(account)
            updated.email = current.email
            updated.version = current.version + 1
            updated.updated_at = utcnow()
            self.accounts[account.id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    def list_accounts(self, offset: int = 0, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return [copy.deepcopy(a) for a in ordered[offset : offset + limit]]

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.token_id in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token id already exists", {"field": "token_id"}
                )
            self.refresh_tokens[record.token_id] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return copy.deepcopy(record) if record else None

    def revoke_refresh_token(self, token_id: str) -> bool:
        """Flip the revoked flag; True only for the call that flipped it."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.revoked:
                return False
            record.revoked = True
            self._persist_state()
            return True

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.account_id == account_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token_id
                for token_id, record in self.refresh_tokens.items()
                if record.is_expired(now)
            ]
            for token_id in expired:
                self.refresh_tokens.pop(token_id, None)
            if expired:
                self._persist_state()
            return len(expired)

    # one-time tokens
    def create_one_time_token(self, record: OneTimeTokenRecord) -> OneTimeTokenRecord:
        with self._data_lock:
            if record.token in self.one_time_tokens:
                raise ConstraintViolation("one-time token already exists", {"field": "token"})
            self.one_time_tokens[record.token] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_one_time_token(self, token: str) -> Optional[OneTimeTokenRecord]:
        with self._data_lock:
            record = self.one_time_tokens.get(token)
            return copy.deepcopy(record) if record else None

    def delete_one_time_token(self, token: str) -> bool:
        """Remove the record; True only for the call that actually removed it."""
        with self._data_lock:
            removed = self.one_time_tokens.pop(token, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def purge_expired_one_time_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token for token, record in self.one_time_tokens.items() if record.is_expired(now)
            ]
            for token in expired:
                self.one_time_tokens.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "one_time_tokens": [
                self._serialize_one_time_token(t) for t in self.one_time_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self.refresh_tokens = {
            r["token_id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.one_time_tokens = {
            t["token"]: self._deserialize_one_time_token(t)
            for t in data.get("one_time_tokens", [])
        }
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "full_name": account.full_name,
            "roles": sorted(account.roles),
            "enabled": account.enabled,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "external_identities": [
                {
                    "provider": identity.provider,
                    "provider_id": identity.provider_id,
                    "linked_at": self._serialize_datetime(identity.linked_at),
                }
                for identity in account.external_identities
            ],
            "version": account.version,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            full_name=data.get("full_name"),
            roles=set(data.get("roles", ["user"])),
            enabled=data.get("enabled", False),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            external_identities=[
                ExternalIdentity(
                    provider=entry["provider"],
                    provider_id=entry["provider_id"],
                    linked_at=self._deserialize_datetime(entry["linked_at"]),
                )
                for entry in data.get("external_identities", [])
            ],
            version=data.get("version", 0),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "token_id": record.token_id,
            "account_id": record.account_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            token_id=data["token_id"],
            account_id=data["account_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=data.get("revoked", False),
        )

    def _serialize_one_time_token(self, record: OneTimeTokenRecord) -> dict:
        return {
            "id": record.id,
            "token": record.token,
            "account_id": record.account_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "purpose": record.purpose.value,
        }

    def _deserialize_one_time_token(self, data: dict) -> OneTimeTokenRecord:
        return OneTimeTokenRecord(
            id=data["id"],
            token=data["token"],
            account_id=data["account_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            purpose=TokenPurpose(data["purpose"]),
        )
