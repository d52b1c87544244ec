from miniapp_notify.auth.context import AdminContext
from miniapp_notify.auth.dependencies import (
    require_admin,
    require_editor_token,
    require_local_request,
    require_same_origin,
)

__all__ = [
    "AdminContext",
    "require_admin",
    "require_editor_token",
    "require_local_request",
    "require_same_origin",
]
