"""
Webhook schemas — acknowledgement and eBay endpoint validation models.
Version: 1.0.0
"""
from typing import Optional

from pydantic import BaseModel, Field


class WebhookReceipt(BaseModel):
    message: str = "Webhook received"
    request_id: Optional[str] = None


class EbayChallengeResponse(BaseModel):
    challenge_response: str = Field(serialization_alias="challengeResponse")
