"""
Credchain - Access Control
Who may read and who may manage a custody record.

- read:   owner, issuer, or anyone in the viewer set
- manage: owner, issuer, or an administrator
"""

from typing import Optional

from credchain.core.errors import UnauthorizedError
from credchain.models.models import Document


def can_access(record: Document, identity: Optional[str]) -> bool:
    if not identity:
        return False
    identity = identity.lower()
    return (
        identity == record.owner_id
        or identity == record.issuer_id
        or identity in (record.viewer_set or [])
    )


def can_manage(record: Document, identity: Optional[str], is_admin: bool = False) -> bool:
    if is_admin:
        return True
    if not identity:
        return False
    identity = identity.lower()
    return identity == record.owner_id or identity == record.issuer_id


def require_access(record: Document, identity: Optional[str], is_admin: bool = False) -> None:
    if not (is_admin or can_access(record, identity)):
        raise UnauthorizedError("Not permitted to access this document")


def require_manage(record: Document, identity: Optional[str], is_admin: bool = False) -> None:
    if not can_manage(record, identity, is_admin):
        raise UnauthorizedError("Only the owner, the issuer or an administrator may do this")
