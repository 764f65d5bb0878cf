"""Authenticated principal handed to every service call.

Identity is established upstream; services never read ambient request state.
"""

from typing import Literal

from pydantic import BaseModel, Field

UserType = Literal["customer", "agent", "admin"]


class Principal(BaseModel):
    user_id: str = Field(min_length=1)
    user_type: UserType

    @property
    def is_customer(self) -> bool:
        return self.user_type == "customer"

    @property
    def is_agent(self) -> bool:
        return self.user_type == "agent"

    @property
    def is_admin(self) -> bool:
        return self.user_type == "admin"
