from dataclasses import dataclass


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, resolved once per request from the bearer token and society membership."""

    user_id: str
    role: str
    society_name: str
    block_name: str | None = None
    apartment: str | None = None
    gate_name: str | None = None

    @property
    def is_resident(self) -> bool:
        return self.role == "resident"

    @property
    def is_guard(self) -> bool:
        return self.role == "security"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def apartment_ref(self) -> tuple[str, str] | None:
        if not self.block_name or not self.apartment:
            return None
        return (self.block_name, self.apartment)
