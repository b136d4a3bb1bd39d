from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

OPERATOR_ROLES = frozenset({"admin", "service_role"})


class AuthUser(BaseModel):
    """
    Identity behind an operator request: the shared admin token or a JWT.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="sub")
    email: Optional[str] = None
    role: str = "authenticated"

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES
