from .proposals import register_proposals_commands
from .review import register_review_commands
from .roles import register_roles_commands
from .run import register_run_commands

__all__ = [
    "register_proposals_commands",
    "register_review_commands",
    "register_roles_commands",
    "register_run_commands",
]
