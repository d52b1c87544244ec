from dataclasses import dataclass


@dataclass
class AdminContext:
    """Identity context for operator requests. There is one shared credential, no user table."""
    auth_method: str = "bearer"  # "bearer", "editor_token" or "no_token"
