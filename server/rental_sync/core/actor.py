"""Identity of the caller of a direct booking action."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a direct booking action."""

    user_id: str
    roles: tuple[str, ...] = ()

    @property
    def is_operator(self) -> bool:
        return "operator" in self.roles
