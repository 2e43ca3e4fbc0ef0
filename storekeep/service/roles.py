from __future__ import annotations

from typing import List, Optional

from storekeep.logging import get_logger
from storekeep.service.errors import NotFoundError, ValidationError
from storekeep.service.identity import IdentityResult, IdentityService
from storekeep.storage.models import Role

logger = get_logger(__name__)


def _raise_for(result: IdentityResult) -> None:
    if result.succeeded:
        return
    messages = result.messages
    raise ValidationError(messages[0], detail={"errors": messages})


class RoleAdminService:
    """Role CRUD behind the Admin-only role pages."""

    def __init__(self, identity: IdentityService) -> None:
        self.identity = identity

    def list_roles(self) -> List[Role]:
        return [role for role in self.identity.list_roles() if role.id and role.name]

    def get_role(self, role_id: Optional[str]) -> Role:
        role = self.identity.find_role_by_id(role_id) if role_id else None
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def create_role(self, name: Optional[str], *, actor: Optional[str] = None) -> Role:
        result, role = self.identity.create_role(name)
        if not result.succeeded or role is None:
            logger.info("role_create_rejected", name=name, actor=actor)
            _raise_for(result)
        logger.info("role_created", role_id=role.id, name=role.name, actor=actor)
        return role

    def rename_role(
        self,
        role_id: str,
        name: Optional[str],
        *,
        body_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Role:
        if body_id is not None and body_id != role_id:
            raise NotFoundError("role id mismatch", detail={"role_id": role_id})
        role = self.get_role(role_id)
        previous = role.name
        result = self.identity.update_role(role, name)
        if not result.succeeded:
            logger.info("role_rename_rejected", role_id=role_id, name=name, actor=actor)
            _raise_for(result)
        logger.info("role_renamed", role_id=role_id, old=previous, new=name, actor=actor)
        return role

    def delete_role(self, role_id: str, *, actor: Optional[str] = None) -> None:
        role = self.get_role(role_id)
        _raise_for(self.identity.delete_role(role))
        logger.info("role_deleted", role_id=role_id, name=role.name, actor=actor)
