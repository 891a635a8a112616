"""
OAuth schemas — authorization start and callback responses.

Tokens never appear in these models; they go straight to the
connection store.
Version: 1.0.0
"""
from typing import Optional

from pydantic import BaseModel

from platform_bridge.schemas.canonical import ConnectionStatus, Platform


class AuthorizeResponse(BaseModel):
    authorization_url: str
    state: str


class CallbackResponse(BaseModel):
    platform: Platform
    status: ConnectionStatus
    shop: Optional[str] = None
