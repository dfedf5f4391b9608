from typing import Any

from pydantic import BaseModel

# Fields accept any JSON value; ChatService does the type and emptiness checks.


class RegisterRequest(BaseModel):
    username: Any = None


class PostMessageRequest(BaseModel):
    text: Any = None
