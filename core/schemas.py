from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from typing import Any, Dict, List, Optional

from core.errors import ValidationError, UpstreamContractError

class CreateProductSchema(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    priceCents: int = Field(gt=0)
    currency: Optional[str] = None
    fileKey: str = Field(min_length=1)
    imageKey: Optional[str] = None
    imageUrl: Optional[str] = None

    @field_validator("imageUrl")
    @classmethod
    def _image_url_shape(cls, v):
        if v and not (v.startswith("http://") or v.startswith("https://") or v.startswith("/")):
            raise ValueError("must be an absolute URL or start with /")
        return v

class UploadUrlSchema(BaseModel):
    fileName: str = Field(min_length=1, max_length=255)
    contentType: Optional[str] = None

def parse_and_validate(schema, data):
    try:
        return schema(**data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Missing or invalid fields",
            details=e.errors(include_url=False, include_context=False),
        )

# Whop API response contracts. Unknown fields are ignored.

class _Upstream(BaseModel):
    model_config = ConfigDict(extra="ignore")

class TokenResponse(_Upstream):
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: int = 3600

class WhopMe(_Upstream):
    id: str = Field(min_length=1)
    username: Optional[str] = None
    email: Optional[str] = None

class WhopCompany(_Upstream):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    title: Optional[str] = None

    @property
    def display_name(self):
        return self.name or self.title or self.id

class WhopCompanyList(_Upstream):
    data: List[WhopCompany] = []

class WhopProductContainer(_Upstream):
    id: str = Field(min_length=1)

class WhopPlan(_Upstream):
    id: str = Field(min_length=1)

class WhopCheckoutConfiguration(_Upstream):
    id: str = Field(min_length=1)
    purchase_url: str = Field(min_length=1)
    plan: Optional[WhopPlan] = None

def parse_upstream(schema, payload, operation):
    if not isinstance(payload, dict):
        raise UpstreamContractError(
            f"{operation}: expected a JSON object from Whop",
            details={"operation": operation, "payload": payload},
        )
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise UpstreamContractError(
            f"{operation}: unexpected Whop response shape",
            details={"operation": operation, "errors": e.errors(include_url=False, include_context=False)},
        )

# Webhook event payloads. Only the fields the handlers read are declared.

class WebhookBuyer(_Upstream):
    id: Optional[str] = None

class PaymentEventData(_Upstream):
    id: Optional[str] = None
    payment_id: Optional[str] = None
    user_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    buyer: Optional[WebhookBuyer] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def resolved_payment_id(self):
        return self.payment_id or self.id

    @property
    def buyer_whop_id(self):
        return (self.buyer.id if self.buyer else None) or self.user_id

    @property
    def product_id(self):
        value = (self.metadata or {}).get("productId")
        return str(value) if value else None
