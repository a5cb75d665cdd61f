from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from idkeeper.logging import get_logger
from idkeeper.storage.errors import ConstraintViolation
from idkeeper.storage.models import (
    DEFAULT_AUTH_PROVIDERS,
    Admin,
    AuthProvider,
    CodeKind,
    EmailRecord,
    LocalCredential,
    ProviderLink,
    RevocationEntry,
    User,
    UserIdentity,
    VerificationCode,
    utcnow,
)

_TABLES = (
    "users",
    "emails",
    "credentials",
    "provider_links",
    "auth_providers",
    "codes",
    "revocations",
    "settings",
    "admins",
)


class MemoryStore:
    """In-process credential store with JSON snapshot persistence.

    Every public method takes ``_data_lock``. ``transaction()`` holds the lock
    for the whole block, so concurrent writers are serialized and a failed
    block is rolled back to the snapshot taken on entry. Nested blocks join
    the outermost one.
    """

    def __init__(self, fs_root: str = "/tmp/idkeeper") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.emails: Dict[str, EmailRecord] = {}
        self.credentials: Dict[str, LocalCredential] = {}
        self.provider_links: List[ProviderLink] = []
        self.auth_providers: Dict[int, AuthProvider] = {}
        self.codes: Dict[Tuple[str, str], VerificationCode] = {}
        self.revocations: Dict[Tuple[str, str], RevocationEntry] = {}
        self.settings: Dict[str, str] = {}
        self.admins: Dict[str, Admin] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._seed_auth_providers()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _seed_auth_providers(self) -> None:
        for idx, name in enumerate(DEFAULT_AUTH_PROVIDERS, start=1):
            self.auth_providers[idx] = AuthProvider(id=idx, name=name)

    # transactions
    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0
            self._persist_state()

    # users
    def _email_record(self, email: str) -> Optional[EmailRecord]:
        return next((rec for rec in self.emails.values() if rec.email == email), None)

    def _provider_for(self, user_id: str) -> Optional[str]:
        return next(
            (link.provider for link in self.provider_links if link.user_id == user_id),
            None,
        )

    def _identity(self, user_id: str, provider: Optional[str] = None) -> Optional[UserIdentity]:
        user = self.users.get(user_id)
        record = self.emails.get(user_id)
        if not user or not record:
            return None
        credential = self.credentials.get(user_id)
        return UserIdentity(
            id=user.id,
            name=user.name,
            email=record.email,
            verified=record.is_verified,
            provider=provider or self._provider_for(user_id),
            password_hash=credential.password_hash if credential else None,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )

    def _insert_user(self, name: str, email: str, *, verified: bool) -> User:
        if self._email_record(email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        now = utcnow()
        user = User(id=str(uuid.uuid4()), name=name, created_at=now, updated_at=now)
        self.users[user.id] = user
        self.emails[user.id] = EmailRecord(user_id=user.id, email=email, is_verified=verified)
        return user

    def create_standard_user(
        self, name: str, email: str, password_hash: str
    ) -> UserIdentity:
        with self.transaction():
            user = self._insert_user(name, email, verified=False)
            self.credentials[user.id] = LocalCredential(
                user_id=user.id, password_hash=password_hash
            )
            return self._identity(user.id)

    def create_external_user(
        self, name: str, email: str, provider: str, provider_uid: str
    ) -> UserIdentity:
        with self.transaction():
            if not any(p.name == provider for p in self.auth_providers.values()):
                raise ConstraintViolation(
                    "auth provider does not exist", {"field": "provider", "provider": provider}
                )
            if any(
                link.provider == provider and link.provider_uid == provider_uid
                for link in self.provider_links
            ):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_link"}
                )
            user = self._insert_user(name, email, verified=True)
            self.provider_links.append(
                ProviderLink(user_id=user.id, provider=provider, provider_uid=provider_uid)
            )
            return self._identity(user.id, provider)

    def get_standard_user_by_email(self, email: str) -> Optional[UserIdentity]:
        with self._data_lock:
            record = self._email_record(email)
            if not record or record.user_id not in self.credentials:
                return None
            return self._identity(record.user_id)

    def get_external_user(self, provider: str, email: str) -> Optional[UserIdentity]:
        with self._data_lock:
            record = self._email_record(email)
            if not record:
                return None
            linked = any(
                link.user_id == record.user_id and link.provider == provider
                for link in self.provider_links
            )
            return self._identity(record.user_id, provider) if linked else None

    def get_user_identity(self, user_id: str) -> Optional[UserIdentity]:
        with self._data_lock:
            return self._identity(user_id)

    def list_users(self, limit: int = 100) -> List[UserIdentity]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            identities = (self._identity(u.id) for u in ordered)
            return [i for i in identities if i is not None][:limit]

    def mark_email_verified(self, user_id: str) -> bool:
        with self._data_lock:
            record = self.emails.get(user_id)
            if not record:
                return False
            record.is_verified = True
            self.users[user_id].updated_at = utcnow()
            self._persist_state()
            return True

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = LocalCredential(
                user_id=user_id, password_hash=password_hash
            )
            self._persist_state()

    # single-use codes
    def add_verification_code(
        self, user_id: str, kind: CodeKind, code_hash: str, created_at: datetime
    ) -> VerificationCode:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for code", {"user_id": user_id})
            key = (CodeKind(kind).value, code_hash)
            if key in self.codes:
                raise ConstraintViolation("code already exists", {"field": "code"})
            record = VerificationCode(
                user_id=user_id, kind=CodeKind(kind), code_hash=code_hash, created_at=created_at
            )
            self.codes[key] = record
            self._persist_state()
            return record

    def get_verification_code(
        self, kind: CodeKind, code_hash: str
    ) -> Optional[VerificationCode]:
        with self._data_lock:
            return self.codes.get((CodeKind(kind).value, code_hash))

    def delete_verification_code(self, kind: CodeKind, code_hash: str) -> bool:
        with self._data_lock:
            removed = self.codes.pop((CodeKind(kind).value, code_hash), None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_codes(self, user_id: str, kind: CodeKind) -> int:
        with self._data_lock:
            kind_value = CodeKind(kind).value
            doomed = [
                key
                for key, rec in self.codes.items()
                if key[0] == kind_value and rec.user_id == user_id
            ]
            for key in doomed:
                self.codes.pop(key, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def purge_codes_before(self, kind: CodeKind, cutoff: datetime) -> int:
        with self._data_lock:
            kind_value = CodeKind(kind).value
            doomed = [
                key
                for key, rec in self.codes.items()
                if key[0] == kind_value and rec.created_at < cutoff
            ]
            for key in doomed:
                self.codes.pop(key, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # revocation ledger
    def add_revocation(self, user_id: str, jti: str) -> RevocationEntry:
        with self._data_lock:
            existing = self.revocations.get((user_id, jti))
            if existing:
                return existing
            entry = RevocationEntry(user_id=user_id, jti=jti)
            self.revocations[(user_id, jti)] = entry
            self._persist_state()
            return entry

    def is_token_revoked(self, user_id: str, jti: str) -> bool:
        with self._data_lock:
            return (user_id, jti) in self.revocations

    # auth providers
    def list_auth_providers(self) -> List[AuthProvider]:
        with self._data_lock:
            return [self.auth_providers[k] for k in sorted(self.auth_providers)]

    def get_auth_provider(self, provider_id: int) -> Optional[AuthProvider]:
        with self._data_lock:
            return self.auth_providers.get(provider_id)

    def get_auth_provider_by_name(self, name: str) -> Optional[AuthProvider]:
        with self._data_lock:
            return next(
                (p for p in self.auth_providers.values() if p.name == name), None
            )

    def update_auth_provider_credentials(
        self,
        provider_id: int,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> Optional[AuthProvider]:
        with self._data_lock:
            provider = self.auth_providers.get(provider_id)
            if not provider:
                return None
            provider.client_id = client_id
            provider.client_secret = client_secret
            provider.redirect_uri = redirect_uri
            provider.updated_at = utcnow()
            self._persist_state()
            return provider

    def set_auth_provider_active(
        self, provider_id: int, active: bool
    ) -> Optional[AuthProvider]:
        with self._data_lock:
            provider = self.auth_providers.get(provider_id)
            if not provider:
                return None
            provider.active = active
            provider.updated_at = utcnow()
            self._persist_state()
            return provider

    # settings
    def get_setting(self, name: str) -> Optional[str]:
        with self._data_lock:
            return self.settings.get(name)

    def set_setting(self, name: str, value: str) -> None:
        with self._data_lock:
            self.settings[name] = value
            self._persist_state()

    # admins
    def create_admin(self, email: str, password_hash: str) -> Admin:
        with self._data_lock:
            if any(a.email == email for a in self.admins.values()):
                raise ConstraintViolation("admin already exists", {"field": "admin_email"})
            admin = Admin(id=str(uuid.uuid4()), email=email, password_hash=password_hash)
            self.admins[admin.id] = admin
            self._persist_state()
            return admin

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        with self._data_lock:
            return next((a for a in self.admins.values() if a.email == email), None)

    # persistence
    @staticmethod
    def _dump(obj: Any) -> dict:
        raw = asdict(obj)
        for key, value in raw.items():
            if isinstance(value, datetime):
                raw[key] = value.isoformat()
            elif isinstance(value, Enum):
                raw[key] = value.value
        return raw

    @staticmethod
    def _dates(data: dict, *keys: str) -> dict:
        parsed = dict(data)
        for key in keys:
            if parsed.get(key):
                parsed[key] = datetime.fromisoformat(parsed[key])
        return parsed

    def _persist_state(self) -> None:
        if self._tx_depth:
            return
        state = {
            "users": [self._dump(u) for u in self.users.values()],
            "emails": [self._dump(e) for e in self.emails.values()],
            "credentials": [self._dump(c) for c in self.credentials.values()],
            "provider_links": [self._dump(p) for p in self.provider_links],
            "auth_providers": [self._dump(p) for p in self.auth_providers.values()],
            "codes": [self._dump(c) for c in self.codes.values()],
            "revocations": [self._dump(r) for r in self.revocations.values()],
            "settings": self.settings,
            "admins": [self._dump(a) for a in self.admins.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(**self._dates(u, "created_at", "updated_at"))
            for u in data.get("users", [])
        }
        self.emails = {e["user_id"]: EmailRecord(**e) for e in data.get("emails", [])}
        self.credentials = {
            c["user_id"]: LocalCredential(**self._dates(c, "updated_at"))
            for c in data.get("credentials", [])
        }
        self.provider_links = [
            ProviderLink(**self._dates(p, "created_at"))
            for p in data.get("provider_links", [])
        ]
        self.auth_providers = {
            p["id"]: AuthProvider(**self._dates(p, "updated_at"))
            for p in data.get("auth_providers", [])
        }
        self.codes = {}
        for raw in data.get("codes", []):
            parsed = self._dates(raw, "created_at")
            parsed["kind"] = CodeKind(parsed["kind"])
            record = VerificationCode(**parsed)
            self.codes[(record.kind.value, record.code_hash)] = record
        self.revocations = {
            (r["user_id"], r["jti"]): RevocationEntry(**self._dates(r, "created_at"))
            for r in data.get("revocations", [])
        }
        self.settings = dict(data.get("settings", {}))
        self.admins = {
            a["id"]: Admin(**self._dates(a, "created_at"))
            for a in data.get("admins", [])
        }
        if not self.auth_providers:
            self._seed_auth_providers()
        return True
