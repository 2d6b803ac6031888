"""
RBAC dependencies for FastAPI routes
Role-based access control implemented as dependencies that run after authentication
"""
from fastapi import HTTPException, status, Request
import logging

logger = logging.getLogger(__name__)

RESOURCES_FOR_ROLES = {
    'admin': {
        'admin': ['read', 'write', 'delete'],
        'admin/users': ['read', 'delete'],
        'admin/outbox': ['read', 'write'],
        'orders': ['read', 'write'],
        'orders/status': ['write'],
        'orders/payments': ['write'],
    },
    'vendor': {
        'cart': ['read', 'write', 'delete'],
        'orders': ['read', 'write'],
        'orders/vendor': ['read'],
        'orders/status': ['write'],
    },
    'driver': {
        'orders': ['read'],
        'orders/available': ['read'],
        'orders/status': ['write'],
    },
    'customer': {
        'cart': ['read', 'write', 'delete'],
        'orders': ['read', 'write'],
    }
}


def normalize_path(path: str) -> str:
    """Normalize request path for RBAC checking"""
    segments = [segment for segment in path.strip('/').split('/') if segment]

    if not segments:
        return ''

    if segments[0] == 'admin' and len(segments) >= 2:
        return f'admin/{segments[1]}'

    if segments[0] == 'orders' and len(segments) >= 2:
        if segments[1] in ('vendor', 'available'):
            return f'orders/{segments[1]}'
        if len(segments) >= 3 and segments[2] in ('status', 'payments'):
            return f'orders/{segments[2]}'
        return 'orders'

    return segments[0]


def translate_method_to_action(method: str) -> str:
    """Map HTTP methods to RBAC actions"""
    method_permission_mapping = {
        'GET': 'read',
        'POST': 'write',
        'PUT': 'write',
        'PATCH': 'write',
        'DELETE': 'delete',
    }
    return method_permission_mapping.get(method.upper(), 'read')


def has_permission(user_role: str, resource_name: str, required_permission: str) -> bool:
    """Check if user role has permission for the resource and action"""
    if user_role not in RESOURCES_FOR_ROLES:
        return False

    user_permissions = RESOURCES_FOR_ROLES[user_role]

    if resource_name in user_permissions:
        return required_permission in user_permissions[resource_name]

    parent_resource = resource_name.split('/')[0] if '/' in resource_name else resource_name
    if parent_resource in user_permissions:
        return required_permission in user_permissions[parent_resource]

    return False


def require_permission(resource: str = None, permission: str = None):
    """
    Create an RBAC dependency that checks permissions

    Args:
        resource: Specific resource name (auto-detected if not provided)
        permission: Specific permission (auto-detected if not provided)
    """
    def check_rbac(request: Request):
        """RBAC dependency function"""
        current_user = getattr(request.state, 'current_user', None)
        if not current_user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required"
            )

        user_role = current_user.get('role', 'customer')
        resource_name = resource or normalize_path(str(request.url.path))
        required_permission = permission or translate_method_to_action(request.method)

        if not has_permission(user_role, resource_name, required_permission):
            logger.warning(f"Access denied - User: {user_role}, Resource: {resource_name}, Permission: {required_permission}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. {user_role.title()} role does not have {required_permission} permission for {resource_name}"
            )

        return True

    return check_rbac


require_cart_access = require_permission()
require_order_read = require_permission("orders", "read")
require_order_write = require_permission("orders", "write")
require_status_update = require_permission("orders/status", "write")
require_payment_report = require_permission("orders/payments", "write")
require_vendor_orders = require_permission("orders/vendor", "read")
require_available_orders = require_permission("orders/available", "read")

require_admin = require_permission("admin", "read")
require_user_deletion = require_permission("admin/users", "delete")
require_user_diagnostics = require_permission("admin/users", "read")
require_outbox_publish = require_permission("admin/outbox", "write")
