from typing import Optional

from pydantic import BaseModel


class UserOut(BaseModel):
    id: str
    email: Optional[str] = None


class SessionResponse(BaseModel):
    user: UserOut
    remembered: bool
