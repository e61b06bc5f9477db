from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    """The slice of a user account that billing needs."""
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None
    payment_gateway_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
