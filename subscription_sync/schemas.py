from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from subscription_sync.errors import ValidationError


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class CheckoutRequest(RequestModel):
    plan_id: str = Field(alias="planId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")
    email: Optional[str] = None


class PortalRequest(RequestModel):
    user_id: str = Field(alias="userId", min_length=1)
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class SessionSyncRequest(RequestModel):
    session_id: str = Field(alias="sessionId", min_length=1)


def parse_body(model, data):
    """Validate a JSON body, turning pydantic errors into a 400 with field details."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        fields = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            fields.append(f"{location}: {error['msg']}")
        raise ValidationError("Invalid request: " + "; ".join(fields))
