"""Caller identity passed from the API layer into the services.

Identity is trusted as given; there is no authentication here.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Actor:
    """Current caller: stable id plus display name."""
    user_id: str
    name: str

    @property
    def label(self) -> str:
        """Display name, falling back to the id."""
        return self.name or self.user_id or "system"


SYSTEM = Actor(user_id="system", name="system")
