"""Router package exports."""
from . import auth, dashboard, groups

__all__ = [
	"auth",
	"dashboard",
	"groups",
]
