from modules.documents.models.user import UserRole

ROLE_PERMISSIONS = {
    UserRole.CO_OWNER: ["upload", "request_signatures", "view"],
    UserRole.GROUP_ADMIN: ["upload", "request_signatures", "view", "manage"],
    UserRole.STAFF: ["view", "manage"],
}

def can_perform_action(user_role: UserRole, action: str) -> bool:
    return action in ROLE_PERMISSIONS.get(user_role, [])
