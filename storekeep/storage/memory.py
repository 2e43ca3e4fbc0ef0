from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from storekeep.logging import get_logger
from storekeep.storage.errors import ConstraintViolation
from storekeep.storage.models import (
    GlassFixationCategory,
    Inventory,
    Location,
    Product,
    RememberedClient,
    Role,
    User,
)

_MUTABLE_USER_FIELDS = frozenset(
    f.name for f in dataclass_fields(User) if f.name not in {"id", "created_at"}
)


def _normalize(value: str) -> str:
    return value.strip().upper()


class MemoryStore:
    """In-process user, role and inventory store with JSON snapshot persistence."""

    def __init__(
        self, fs_root: str = "/tmp/storekeep", *, secret_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        # user_id -> role ids in the order they were granted
        self.user_roles: Dict[str, List[str]] = {}
        self.security_answers: Dict[str, str] = {}
        self.two_factor_secrets: Dict[str, str] = {}
        self.remembered_clients: Dict[str, RememberedClient] = {}
        self.locations: Dict[int, Location] = {}
        self.fixation_categories: Dict[int, GlassFixationCategory] = {}
        self.products: Dict[int, Product] = {}
        self.inventory: Dict[int, Inventory] = {}
        self._user_id_seq = 1
        self._record_id_seq = 1
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(secret_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "storekeep.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("SECRET_KEY")
        if not material:
            secret_path = self.fs_root / ".secret_key"
            try:
                if secret_path.exists():
                    material = secret_path.read_text().strip()
            except OSError:
                material = None
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(generated)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist store encryption key") from exc
                material = generated
        return Fernet(self._derive_cipher_key(material))

    def _encrypt(self, value: str) -> str:
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            self.logger.warning("stored_secret_decrypt_failed")
            return None

    def _next_record_id(self) -> int:
        with self._data_lock:
            value = self._record_id_seq
            self._record_id_seq += 1
            return value

    # users
    def create_user(
        self,
        user_name: str,
        email: str,
        *,
        name: Optional[str] = None,
        phone: str = "",
        location_id: Optional[int] = None,
        is_active: bool = True,
        security_question: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self.get_user_by_name(user_name):
                raise ConstraintViolation("user name already exists", {"field": "user_name"})
            if email and self.get_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user_id is None:
                user_id = str(self._user_id_seq)
                self._user_id_seq += 1
            elif user_id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            user = User(
                id=user_id,
                user_name=user_name,
                email=email,
                name=name,
                phone=phone,
                location_id=location_id,
                is_active=is_active,
                security_question=security_question,
            )
            self.users[user_id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_name(self, user_name: str) -> Optional[User]:
        wanted = _normalize(user_name)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if _normalize(u.user_name) == wanted), None
            )

    def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = _normalize(email)
        if not wanted:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email and _normalize(u.email) == wanted),
                None,
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at)[:limit]

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        unknown = set(changes) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_security_question(self, user_id: str, question: str, answer: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.security_question = question
            self.security_answers[user_id] = self._encrypt(answer)
            self._persist_state()

    def get_security_answer(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            stored = self.security_answers.get(user_id)
        if not stored:
            return None
        return self._decrypt(stored)

    def set_two_factor_secret(self, user_id: str, secret: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            self.two_factor_secrets[user_id] = self._encrypt(secret)
            self._persist_state()

    def get_two_factor_secret(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            stored = self.two_factor_secrets.get(user_id)
        if not stored:
            return None
        return self._decrypt(stored)

    def add_remembered_client(
        self, token_digest: str, user_id: str, expires_at: datetime
    ) -> RememberedClient:
        with self._data_lock:
            self._drop_expired_clients(datetime.now(timezone.utc))
            record = RememberedClient(user_id=user_id, expires_at=expires_at)
            self.remembered_clients[token_digest] = record
            self._persist_state()
            return record

    def get_remembered_client(self, token_digest: str) -> Optional[RememberedClient]:
        """Return a live record; an expired one is deleted on sight."""
        with self._data_lock:
            record = self.remembered_clients.get(token_digest)
            if record and record.expires_at <= datetime.now(timezone.utc):
                self.remembered_clients.pop(token_digest, None)
                self._persist_state()
                return None
            return record

    def _drop_expired_clients(self, now: datetime) -> int:
        expired = [
            digest
            for digest, record in self.remembered_clients.items()
            if record.expires_at <= now
        ]
        for digest in expired:
            self.remembered_clients.pop(digest, None)
        return len(expired)

    def revoke_remembered_clients(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                digest
                for digest, record in self.remembered_clients.items()
                if record.user_id == user_id
            ]
            for digest in stale:
                self.remembered_clients.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    # roles
    def create_role(self, name: str) -> Role:
        with self._data_lock:
            if self.get_role_by_name(name):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role.new(name)
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        wanted = _normalize(name)
        with self._data_lock:
            return next(
                (r for r in self.roles.values() if _normalize(r.name) == wanted), None
            )

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.created_at)

    def rename_role(self, role_id: str, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            clash = self.get_role_by_name(name)
            if clash and clash.id != role_id:
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role.name = name
            self._persist_state()
            return role

    def delete_role(self, role_id: str) -> bool:
        """Delete a role and every membership row that points at it."""
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for user_id, role_ids in list(self.user_roles.items()):
                if role_id in role_ids:
                    self.user_roles[user_id] = [rid for rid in role_ids if rid != role_id]
            self._persist_state()
            return True

    def add_user_to_role(self, user_id: str, role_id: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            memberships = self.user_roles.setdefault(user_id, [])
            if role_id in memberships:
                raise ConstraintViolation("user already in role", {"role_id": role_id})
            memberships.append(role_id)
            self._persist_state()

    def get_user_role_names(self, user_id: str) -> List[str]:
        with self._data_lock:
            return [
                self.roles[rid].name
                for rid in self.user_roles.get(user_id, [])
                if rid in self.roles
            ]

    # inventory
    def create_location(self, name: str) -> Location:
        with self._data_lock:
            location = Location(id=self._next_record_id(), name=name)
            self.locations[location.id] = location
            self._persist_state()
            return location

    def get_location(self, location_id: int) -> Optional[Location]:
        with self._data_lock:
            return self.locations.get(location_id)

    def create_fixation_category(
        self, name: str, fixation_cost: Decimal = Decimal("0")
    ) -> GlassFixationCategory:
        with self._data_lock:
            category = GlassFixationCategory(
                id=self._next_record_id(), name=name, fixation_cost=Decimal(fixation_cost)
            )
            self.fixation_categories[category.id] = category
            self._persist_state()
            return category

    def create_product(
        self,
        code: str,
        name: str,
        *,
        product_type: str = "",
        color: str = "",
        price: Decimal = Decimal("0"),
        fixation_category_id: Optional[int] = None,
    ) -> Product:
        with self._data_lock:
            if fixation_category_id is not None and fixation_category_id not in self.fixation_categories:
                raise ConstraintViolation(
                    "fixation category not found", {"fixation_category_id": fixation_category_id}
                )
            if any(p.code == code for p in self.products.values()):
                raise ConstraintViolation("product code already exists", {"field": "code"})
            product = Product(
                id=self._next_record_id(),
                code=code,
                name=name,
                product_type=product_type,
                color=color,
                price=Decimal(price),
                fixation_category_id=fixation_category_id,
            )
            self.products[product.id] = product
            self._persist_state()
            return product

    def get_product(self, product_id: int) -> Optional[Product]:
        with self._data_lock:
            return self.products.get(product_id)

    def add_inventory(
        self,
        product_id: Optional[int],
        location_id: Optional[int],
        *,
        shelf: str = "",
        quantity: int = 0,
    ) -> Inventory:
        with self._data_lock:
            if product_id is not None and product_id not in self.products:
                raise ConstraintViolation("product not found", {"product_id": product_id})
            if location_id is not None and location_id not in self.locations:
                raise ConstraintViolation("location not found", {"location_id": location_id})
            record = Inventory(
                id=self._next_record_id(),
                product_id=product_id,
                location_id=location_id,
                shelf=shelf,
                quantity=quantity,
            )
            self.inventory[record.id] = record
            self._persist_state()
            return record

    def list_inventory(self, location_id: Optional[int] = None) -> List[Inventory]:
        with self._data_lock:
            rows = [
                row
                for row in self.inventory.values()
                if location_id is None or row.location_id == location_id
            ]
            return sorted(rows, key=lambda row: row.id)

    # persistence
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    {
                        "user_id": user_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for user_id, creds in self.credentials.items()
                ],
                "roles": [
                    {
                        "id": r.id,
                        "name": r.name,
                        "created_at": r.created_at.isoformat(),
                    }
                    for r in self.roles.values()
                ],
                "user_roles": self.user_roles,
                "security_answers": self.security_answers,
                "two_factor_secrets": self.two_factor_secrets,
                "remembered_clients": [
                    {
                        "digest": digest,
                        "user_id": rc.user_id,
                        "expires_at": rc.expires_at.isoformat(),
                        "created_at": rc.created_at.isoformat(),
                    }
                    for digest, rc in self.remembered_clients.items()
                ],
                "locations": [{"id": loc.id, "name": loc.name} for loc in self.locations.values()],
                "fixation_categories": [
                    {"id": c.id, "name": c.name, "fixation_cost": str(c.fixation_cost)}
                    for c in self.fixation_categories.values()
                ],
                "products": [
                    {
                        "id": p.id,
                        "code": p.code,
                        "name": p.name,
                        "product_type": p.product_type,
                        "color": p.color,
                        "price": str(p.price),
                        "fixation_category_id": p.fixation_category_id,
                    }
                    for p in self.products.values()
                ],
                "inventory": [
                    {
                        "id": row.id,
                        "product_id": row.product_id,
                        "location_id": row.location_id,
                        "shelf": row.shelf,
                        "quantity": row.quantity,
                    }
                    for row in self.inventory.values()
                ],
                "sequences": {
                    "user_id": self._user_id_seq,
                    "record_id": self._record_id_seq,
                },
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.roles = {
            r["id"]: Role(
                id=r["id"],
                name=r["name"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in data.get("roles", [])
        }
        self.user_roles = {
            user_id: list(role_ids) for user_id, role_ids in data.get("user_roles", {}).items()
        }
        self.security_answers = dict(data.get("security_answers", {}))
        self.two_factor_secrets = dict(data.get("two_factor_secrets", {}))
        self.remembered_clients = {
            rc["digest"]: RememberedClient(
                user_id=rc["user_id"],
                expires_at=datetime.fromisoformat(rc["expires_at"]),
                created_at=datetime.fromisoformat(rc["created_at"]),
            )
            for rc in data.get("remembered_clients", [])
        }
        self.locations = {
            loc["id"]: Location(id=loc["id"], name=loc["name"])
            for loc in data.get("locations", [])
        }
        self.fixation_categories = {
            c["id"]: GlassFixationCategory(
                id=c["id"], name=c["name"], fixation_cost=Decimal(c["fixation_cost"])
            )
            for c in data.get("fixation_categories", [])
        }
        self.products = {
            p["id"]: Product(
                id=p["id"],
                code=p["code"],
                name=p["name"],
                product_type=p.get("product_type", ""),
                color=p.get("color", ""),
                price=Decimal(p.get("price", "0")),
                fixation_category_id=p.get("fixation_category_id"),
            )
            for p in data.get("products", [])
        }
        self.inventory = {
            row["id"]: Inventory(
                id=row["id"],
                product_id=row.get("product_id"),
                location_id=row.get("location_id"),
                shelf=row.get("shelf", ""),
                quantity=int(row.get("quantity", 0)),
            )
            for row in data.get("inventory", [])
        }
        sequences = data.get("sequences", {})
        numeric_ids = [int(uid) for uid in self.users if uid.isdigit()]
        self._user_id_seq = max(
            int(sequences.get("user_id", 1)), max(numeric_ids, default=0) + 1
        )
        self._record_id_seq = int(sequences.get("record_id", 1))
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "user_name": user.user_name,
            "email": user.email,
            "name": user.name,
            "phone": user.phone,
            "location_id": user.location_id,
            "is_active": user.is_active,
            "security_question": user.security_question,
            "two_factor_enabled": user.two_factor_enabled,
            "access_failed_count": user.access_failed_count,
            "lockout_end": user.lockout_end.isoformat() if user.lockout_end else None,
            "created_at": user.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        lockout_end = data.get("lockout_end")
        created_at = data.get("created_at")
        return User(
            id=str(data["id"]),
            user_name=data["user_name"],
            email=data.get("email", ""),
            name=data.get("name"),
            phone=data.get("phone", ""),
            location_id=data.get("location_id"),
            is_active=data.get("is_active", True),
            security_question=data.get("security_question"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            access_failed_count=int(data.get("access_failed_count", 0)),
            lockout_end=datetime.fromisoformat(lockout_end) if lockout_end else None,
            created_at=(
                datetime.fromisoformat(created_at)
                if created_at
                else datetime.now(timezone.utc)
            ),
        )
