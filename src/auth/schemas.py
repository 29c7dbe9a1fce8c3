from typing import Optional
from pydantic import BaseModel, ConfigDict


class TokenUser(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    is_verified: bool = False
    token_type: Optional[str] = "bearer"
