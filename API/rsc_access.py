import logging
import uuid
from dataclasses import dataclass

from rsc_context import Context
from rsc_errors import ApiRequestError, NotFoundError, ProtocolError, ValidationError
from rsc_graphql import result
from rsc_log import TRACE

_LOG = logging.getLogger("rsc.access")

# Domains listed by users(); service accounts are not users.
USER_DOMAINS = ("LOCAL", "SSO")

_ROLE_FIELDS = """id
        name
        description
        isOrgAdmin
        explicitlyAssignedPermissions {
            operation
            objectsForHierarchyTypes {
                objectIds
                snappableType
            }
        }"""

_ROLES_BY_IDS_QUERY = (
    """query RscRolesByIds($roleIds: [String!]!) {
    result: getRolesByIds(roleIds: $roleIds) {
        %s
    }
}"""
    % _ROLE_FIELDS
)

_ALL_ROLES_QUERY = (
    """query RscAllRolesInOrg($after: String, $nameFilter: String) {
    result: getAllRolesInOrgConnection(after: $after, nameFilter: $nameFilter) {
        nodes {
            %s
        }
        pageInfo {
            endCursor
            hasNextPage
        }
    }
}"""
    % _ROLE_FIELDS
)

_MUTATE_ROLE_QUERY = """mutation RscMutateRole($roleId: String, $name: String!, $description: String!, $permissions: [PermissionInput!]!, $protectableClusters: [String!]!) {
    result: mutateRole(roleId: $roleId, name: $name, description: $description, permissions: $permissions, protectableClusters: $protectableClusters)
}"""

_DELETE_ROLE_QUERY = """mutation RscDeleteRole($roleId: String!) {
    result: deleteRole(roleId: $roleId)
}"""

_USERS_QUERY = """query RscUsersInCurrentAndDescendantOrganization($after: String, $filter: UserFilterInput) {
    result: usersInCurrentAndDescendantOrganization(after: $after, filter: $filter) {
        nodes {
            id
            email
            domain
            status
            isAccountOwner
            groups
            roles {
                id
                name
            }
        }
        pageInfo {
            endCursor
            hasNextPage
        }
    }
}"""

_CREATE_USER_QUERY = """mutation RscCreateUser($email: String!, $roleIds: [String!]!) {
    result: createUser(email: $email, roleIds: $roleIds)
}"""

_DELETE_USERS_QUERY = """mutation RscDeleteUserFromAccount($ids: [String!]!) {
    result: deleteUserFromAccount(ids: $ids)
}"""

_ADD_ROLE_ASSIGNMENT_QUERY = """mutation RscAddRoleAssignment($userIds: [String!], $groupIds: [String!], $roleIds: [String!]!) {
    result: addRoleAssignment(userIds: $userIds, groupIds: $groupIds, roleIds: $roleIds)
}"""

_UPDATE_ROLE_ASSIGNMENT_QUERY = """mutation RscUpdateRoleAssignment($userIds: [String!], $groupIds: [String!], $roleIds: [String!]!) {
    result: updateRoleAssignment(userIds: $userIds, groupIds: $groupIds, roleIds: $roleIds)
}"""


def _role_id(value) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"invalid role id: {value!r}") from None


@dataclass(frozen=True)
class Hierarchy:
    """Objects of one snappable type a permission applies to."""

    snappable_type: str
    object_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Permission:
    operation: str
    hierarchies: tuple[Hierarchy, ...] = ()

    def as_input(self) -> dict:
        return {
            "operation": self.operation,
            "objectsForHierarchyTypes": [
                {"snappableType": h.snappable_type, "objectIds": list(h.object_ids)} for h in self.hierarchies
            ],
        }


@dataclass(frozen=True)
class Role:
    id: str
    name: str
    description: str = ""
    permissions: tuple[Permission, ...] = ()
    is_org_admin: bool = False


@dataclass(frozen=True)
class RoleRef:
    id: str
    name: str = ""


@dataclass(frozen=True)
class User:
    id: str
    email: str
    domain: str = ""
    status: str = ""
    is_account_owner: bool = False
    groups: tuple[str, ...] = ()
    roles: tuple[RoleRef, ...] = ()

    def has_role(self, role_id) -> bool:
        role_id = _role_id(role_id)
        return any(r.id == role_id for r in self.roles)


def _parse_role(node) -> Role:
    if not isinstance(node, dict) or not node.get("id"):
        raise ProtocolError(f"invalid role: {node!r}")
    permissions = []
    for p in node.get("explicitlyAssignedPermissions") or []:
        hierarchies = tuple(
            Hierarchy(str(h.get("snappableType") or ""), tuple(str(i) for i in h.get("objectIds") or []))
            for h in p.get("objectsForHierarchyTypes") or []
        )
        permissions.append(Permission(str(p.get("operation") or ""), hierarchies))
    return Role(
        id=str(node["id"]),
        name=str(node.get("name") or ""),
        description=str(node.get("description") or ""),
        permissions=tuple(permissions),
        is_org_admin=bool(node.get("isOrgAdmin")),
    )


def _parse_user(node) -> User:
    if not isinstance(node, dict) or not node.get("id"):
        raise ProtocolError(f"invalid user: {node!r}")
    return User(
        id=str(node["id"]),
        email=str(node.get("email") or ""),
        domain=str(node.get("domain") or ""),
        status=str(node.get("status") or ""),
        is_account_owner=bool(node.get("isAccountOwner")),
        groups=tuple(str(g) for g in node.get("groups") or []),
        roles=tuple(RoleRef(str(r.get("id")), str(r.get("name") or "")) for r in node.get("roles") or []),
    )


class AccessAPI:
    """Roles and users of the RSC account."""

    def __init__(self, executor, logger: logging.Logger | None = None):
        self.executor = executor
        self._log = logger or _LOG

    def _request(self, ctx: Context, query: str, variables: dict, operation: str):
        buf = self.executor.request(ctx, query, variables)
        return result(buf, operation)

    def _pages(self, ctx: Context, query: str, variables: dict, operation: str):
        cursor = None
        while True:
            page_vars = dict(variables)
            if cursor:
                page_vars["after"] = cursor
            payload = self._request(ctx, query, page_vars, operation)
            if not isinstance(payload, dict):
                raise ProtocolError("invalid page", operation=operation)
            yield from payload.get("nodes") or []
            page = payload.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                return
            cursor = page.get("endCursor")
            if not cursor:
                raise ProtocolError("next page without a cursor", operation=operation)

    def _expect_true(self, payload, operation: str, message: str, **details) -> None:
        if payload is not True:
            raise ApiRequestError(message, operation=operation, **details)

    def role(self, ctx: Context, role_id) -> Role:
        role_id = _role_id(role_id)
        self._log.log(TRACE, "role(%s)", role_id)
        try:
            payload = self._request(ctx, _ROLES_BY_IDS_QUERY, {"roleIds": [role_id]}, "getRolesByIds")
        except ApiRequestError as e:
            if e.message.startswith("NOT_FOUND"):
                raise NotFoundError("role not found", operation="getRolesByIds", role_id=role_id) from e
            raise
        if not isinstance(payload, list):
            raise ProtocolError("role list is not an array", operation="getRolesByIds")
        if not payload:
            raise NotFoundError("role not found", operation="getRolesByIds", role_id=role_id)
        if len(payload) > 1:
            raise ProtocolError("multiple roles returned for one id", operation="getRolesByIds", role_id=role_id)
        return _parse_role(payload[0])

    def roles(self, ctx: Context, name_filter: str = "") -> list[Role]:
        self._log.log(TRACE, "roles(%r)", name_filter)
        variables = {"nameFilter": name_filter} if name_filter else {}
        return [
            _parse_role(node)
            for node in self._pages(ctx, _ALL_ROLES_QUERY, variables, "getAllRolesInOrgConnection")
        ]

    def _mutate_role(self, ctx, role_id, name, description, permissions, protectable_clusters) -> str:
        if not name:
            raise ValidationError("role name is required")
        payload = self._request(
            ctx,
            _MUTATE_ROLE_QUERY,
            {
                "roleId": role_id,
                "name": name,
                "description": description or "",
                "permissions": [p.as_input() for p in permissions or ()],
                "protectableClusters": list(protectable_clusters or ()),
            },
            "mutateRole",
        )
        if not isinstance(payload, str) or not payload:
            raise ProtocolError("mutate role returned no id", operation="mutateRole", name=name)
        return _role_id(payload)

    def add_role(self, ctx: Context, name: str, description: str = "", permissions=(), protectable_clusters=()) -> str:
        """Create a role and return its id."""
        self._log.log(TRACE, "add_role(%r)", name)
        role_id = self._mutate_role(ctx, None, name, description, permissions, protectable_clusters)
        self._log.info("Added role %s (%s)", name, role_id)
        return role_id

    def update_role(
        self, ctx: Context, role_id, name: str, description: str = "", permissions=(), protectable_clusters=()
    ) -> None:
        role_id = _role_id(role_id)
        self._log.log(TRACE, "update_role(%s)", role_id)
        self._mutate_role(ctx, role_id, name, description, permissions, protectable_clusters)

    def remove_role(self, ctx: Context, role_id) -> None:
        # deleteRole reports success for unknown ids.
        role_id = self.role(ctx, role_id).id
        payload = self._request(ctx, _DELETE_ROLE_QUERY, {"roleId": role_id}, "deleteRole")
        self._expect_true(payload, "deleteRole", "failed to delete role", role_id=role_id)
        self._log.info("Removed role %s", role_id)

    def users(self, ctx: Context, email_filter: str = "") -> list[User]:
        self._log.log(TRACE, "users(%r)", email_filter)
        user_filter = {"domainFilter": list(USER_DOMAINS)}
        if email_filter:
            user_filter["emailFilter"] = email_filter
        return [
            _parse_user(node)
            for node in self._pages(
                ctx, _USERS_QUERY, {"filter": user_filter}, "usersInCurrentAndDescendantOrganization"
            )
        ]

    def user(self, ctx: Context, *, user_id: str = "", email: str = "") -> User:
        """Look a user up by id or by exact email address."""
        if bool(user_id) == bool(email):
            raise ValidationError("exactly one of user_id and email is required")
        for user in self.users(ctx, email):
            if (user_id and user.id == user_id) or (email and user.email == email):
                return user
        raise NotFoundError("user not found", operation="user", user_id=user_id, email=email)

    def create_user(self, ctx: Context, email: str, role_ids) -> str:
        """Create a user and return its id. A user always needs at least one role."""
        role_ids = [_role_id(r) for r in role_ids or ()]
        if not email:
            raise ValidationError("email is required")
        if not role_ids:
            raise ValidationError("a user needs at least one role")
        payload = self._request(ctx, _CREATE_USER_QUERY, {"email": email, "roleIds": role_ids}, "createUser")
        if not isinstance(payload, str) or not payload:
            raise ApiRequestError("failed to create user", operation="createUser", email=email)
        self._log.info("Created user %s (%s)", email, payload)
        return payload

    def delete_user(self, ctx: Context, user_id: str) -> None:
        payload = self._request(ctx, _DELETE_USERS_QUERY, {"ids": [user_id]}, "deleteUserFromAccount")
        self._expect_true(payload, "deleteUserFromAccount", "failed to delete user", user_id=user_id)

    def assign_roles(self, ctx: Context, user_id: str, role_ids) -> None:
        role_ids = [_role_id(r) for r in role_ids or ()]
        if not role_ids:
            raise ValidationError("no roles to assign")
        payload = self._request(
            ctx, _ADD_ROLE_ASSIGNMENT_QUERY, {"roleIds": role_ids, "userIds": [user_id]}, "addRoleAssignment"
        )
        self._expect_true(payload, "addRoleAssignment", "failed to assign roles", user_id=user_id)

    def replace_roles(self, ctx: Context, user_id: str, role_ids) -> None:
        role_ids = [_role_id(r) for r in role_ids or ()]
        payload = self._request(
            ctx, _UPDATE_ROLE_ASSIGNMENT_QUERY, {"roleIds": role_ids, "userIds": [user_id]}, "updateRoleAssignment"
        )
        self._expect_true(payload, "updateRoleAssignment", "failed to replace roles", user_id=user_id)

    def unassign_roles(self, ctx: Context, user_id: str, role_ids) -> None:
        """Drop `role_ids` from the user, keeping the rest of its roles."""
        drop = {_role_id(r) for r in role_ids or ()}
        user = self.user(ctx, user_id=user_id)
        self.replace_roles(ctx, user.id, [r.id for r in user.roles if r.id not in drop])
