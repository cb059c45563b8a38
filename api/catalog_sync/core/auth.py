from dataclasses import dataclass
from enum import Enum

SCOPE_RUN = "sync:run"
SCOPE_READ = "sync:read"
SCOPE_ADMIN = "sync:admin"


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    @property
    def actor_type(self) -> str:
        return self.principal_type.value
