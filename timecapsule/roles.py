from __future__ import annotations

from dataclasses import dataclass

# Both roles serve the HTTP API; only the sweeper runs the interval timer.
SUPPORTED_ROLES = (
    "api",
    "sweeper",
)
TIMER_ROLES = frozenset({"sweeper"})


@dataclass(frozen=True)
class RuntimeRole:
    name: str

    @property
    def runs_timer(self) -> bool:
        return self.name in TIMER_ROLES


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role)

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: schema migrations run outside the app."
    )
