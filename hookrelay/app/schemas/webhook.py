from pydantic import BaseModel


class HandshakeResponse(BaseModel):
    plain_token: str
    signature: str


class DeliveryResponse(BaseModel):
    status: str  # "delivered", "no_subscriber", "send_error"
    delivered: int = 0
    failed: int = 0
