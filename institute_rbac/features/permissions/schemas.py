"""
Pydantic schemas for permission management.

Request and response models for the permission catalog, roles, assignments
and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    key: str
    display_name: str
    module: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PermissionCatalogResponse(BaseModel):
    """Permissions grouped by module, for the role editor."""
    permissions: Dict[str, List[PermissionResponse]]
    total_permissions: int


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


def _check_key(v: str) -> str:
    v = v.strip().lower()
    if not v.replace('_', '').replace('-', '').isalnum():
        raise ValueError('Role key must contain only alphanumeric characters, underscores, and hyphens')
    return v


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    key: str = Field(..., min_length=1, max_length=100, description="Key, unique within the institute")
    permission_ids: List[str] = Field(default_factory=list, description="Catalog permission ids")

    @field_validator('key')
    @classmethod
    def key_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role key format."""
        return _check_key(v)


class RoleUpdate(BaseModel):
    """
    Schema for updating a role.

    ``version`` is the revision the client last read; when given, the update
    is rejected if the role has changed since.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    key: Optional[str] = Field(None, min_length=1, max_length=100)
    permission_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None
    version: Optional[int] = Field(None, ge=1)

    @field_validator('key')
    @classmethod
    def key_alphanumeric_underscore(cls, v: Optional[str]) -> Optional[str]:
        return _check_key(v) if v is not None else v


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    key: str
    institute_id: Optional[str]
    is_active: bool
    is_system: bool
    version: int
    permissions: List[PermissionResponse] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleListResponse(BaseModel):
    roles: List[RoleResponse]
    total_roles: int


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user in the current institute."""
    user_id: str = Field(..., description="User ID")
    role_id: str = Field(..., description="Role ID")


class AssignmentResponse(BaseModel):
    user_id: str
    role_id: str
    institute_id: Optional[str]
    assigned_by_id: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Access Schemas
# ============================================================================

class MyPermissionsResponse(BaseModel):
    """The calling user's effective permissions in the current institute."""
    permissions: List[str]
    role: Optional[str] = None
    role_key: Optional[str] = None
    has_full_access: bool = False


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    institute_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    skip: int
    limit: int
