"""
Melodia - Pydantic Schemas
Request bodies accepted by the JSON API.
"""

from typing import List, Optional

from flask import request
from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ApiModel(BaseModel):
    # Bodies arrive in camelCase; handlers read the snake_case attributes.
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


def parse_body(model):
    """Validate the current request's JSON body; raises pydantic.ValidationError."""
    return model.model_validate(request.get_json(silent=True) or {})


def validation_details(error):
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]


# Accounts

class RegisterRequest(ApiModel):
    name: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8)


class EmailRequest(ApiModel):
    email: str = Field(pattern=EMAIL_PATTERN)


class VerifyEmailRequest(ApiModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    code: str = Field(min_length=1)


class LoginRequest(ApiModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ResetPasswordRequest(ApiModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    code: str = Field(min_length=1)
    password: str = Field(min_length=8)


# Song requests & lyrics

class CreateSongRequest(ApiModel):
    requester_name: str = Field(alias="requesterName", min_length=2)
    recipient_details: str = Field(alias="recipientDetails", min_length=5)
    occasion: Optional[str] = None
    languages: str = Field(min_length=1)
    mood: List[str] = []
    song_story: Optional[str] = Field(default=None, alias="songStory")
    mobile_number: Optional[str] = Field(default=None, alias="mobileNumber")
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)

    @field_validator("occasion", "song_story", "mobile_number", "email", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("languages", mode="before")
    @classmethod
    def join_languages(cls, value):
        if isinstance(value, list):
            return ", ".join(str(v) for v in value if str(v).strip())
        return value


class GenerateLyricsRequest(ApiModel):
    request_id: int = Field(alias="requestId")


class RefineLyricsRequest(ApiModel):
    request_id: int = Field(alias="requestId")
    refine_text: str = Field(alias="refineText", min_length=1)


class StoreLyricsRequest(ApiModel):
    request_id: int = Field(alias="requestId")
    lyrics: str = Field(min_length=1)
    title: Optional[str] = None
    music_style: Optional[str] = Field(default=None, alias="musicStyle")


class ApproveLyricsRequest(ApiModel):
    draft_id: int = Field(alias="draftId")
    request_id: int = Field(alias="requestId")


# Songs

class GenerateSongRequest(ApiModel):
    lyrics_draft_id: int = Field(alias="lyricsDraftId")
    song_request_id: int = Field(alias="songRequestId")


class SelectVariantRequest(ApiModel):
    variant_index: int = Field(alias="variantIndex", ge=0)


class UpdateLibraryRequest(ApiModel):
    song_id: int = Field(alias="songId", gt=0)
    add_to_library: StrictBool = Field(alias="addToLibrary")


class TimestampedLyricsRequest(ApiModel):
    song_id: int = Field(alias="songId")
    variant_index: int = Field(default=0, alias="variantIndex", ge=0)


# Payments

class CreateOrderRequest(ApiModel):
    amount: float = Field(gt=0)
    song_request_id: Optional[int] = Field(default=None, alias="songRequestId")
    plan_id: Optional[str] = Field(default=None, alias="planId")


class VerifyPaymentRequest(ApiModel):
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_order_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
