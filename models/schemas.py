from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ledger.pricing import DEFAULT_MODEL


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- Requests ---------------------------------------------------------------


class GenerateScriptRequest(CamelModel):
    topic: str = Field(min_length=1, max_length=500)
    model: str = DEFAULT_MODEL
    duration: Union[float, str] = "3m"
    platform: str = "youtube"
    tone: str = "informative"
    language: str = "en"


class SectionText(CamelModel):
    section_index: int = Field(alias="sectionIndex", ge=0)
    timestamp: str = Field(min_length=1)
    text: str = Field(min_length=1, validation_alias=AliasChoices("text", "narasiText"))


class SectionAudioRequest(CamelModel):
    sections: List[SectionText] = Field(min_length=1, max_length=50)
    voice_id: str = Field(default="alloy", alias="voiceId")


class DeleteSectionAudioRequest(CamelModel):
    timestamp: str = Field(min_length=1)


class DeleteMediaRequest(CamelModel):
    script_id: str = Field(alias="scriptId", min_length=1)
    media_id: str = Field(alias="mediaId", min_length=1)

    @field_validator("media_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class MediaSearchRequest(CamelModel):
    script_id: str = Field(alias="scriptId", min_length=1)
    keywords: str = Field(min_length=1)
    count: int = Field(default=5, ge=1)
    orientation: Literal["landscape", "portrait", "square"] = "landscape"
    source: Literal["pexels", "pixabay"] = "pexels"


# --- Callbacks ---------------------------------------------------------------


class CallbackBase(CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    owner_id: str = Field(validation_alias=AliasChoices("ownerId", "scriptId"), min_length=1)
    status: Literal["completed", "failed"]
    error: Optional[str] = None
    dispatch_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("dispatchId", "dispatch_id"))


class AudioSegment(CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: str = Field(min_length=1)
    section_index: int = Field(alias="sectionIndex", ge=0)
    url: str = Field(validation_alias=AliasChoices("url", "audioUrl"), min_length=1)
    external_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("externalId", "driveFileId"))
    voice_id: Optional[str] = Field(default=None, alias="voiceId")

    def stored(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "sectionIndex": self.section_index,
            "audioUrl": self.url,
            "externalId": self.external_id,
            "voiceId": self.voice_id,
        }


class AudioCallback(CallbackBase):
    items: List[AudioSegment] = Field(
        default_factory=list, validation_alias=AliasChoices("items", "audioFiles", "sections")
    )


class MediaItem(CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    external_id: str = Field(validation_alias=AliasChoices("externalId", "id"))
    url: str = Field(min_length=1)
    download_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("downloadUrl", "download_url"))
    source_provider: str = Field(default="pexels", validation_alias=AliasChoices("sourceProvider", "source"))
    photographer: Optional[str] = None
    alt: Optional[str] = None
    duration: Optional[float] = None
    drive_file_id: Optional[str] = Field(default=None, alias="driveFileId")

    @field_validator("external_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    def stored(self, kind: str) -> dict[str, Any]:
        item = {
            "externalId": self.external_id,
            "url": self.url,
            "downloadUrl": self.download_url,
            "kind": kind,
            "sourceProvider": self.source_provider,
            "photographer": self.photographer,
            "alt": self.alt,
            "driveFileId": self.drive_file_id,
        }
        if self.duration is not None:
            item["duration"] = self.duration
        return item


class ImageCallback(CallbackBase):
    items: List[MediaItem] = Field(default_factory=list, validation_alias=AliasChoices("items", "images"))


class VideoCallback(CallbackBase):
    items: List[MediaItem] = Field(default_factory=list, validation_alias=AliasChoices("items", "videos"))


class ScriptCallback(CallbackBase):
    script: Optional[str] = None


class PaymentCallback(CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId", min_length=1)
    type: str
    status: str
    order_id: str = Field(alias="orderId", min_length=1)
    credits: Optional[int] = None
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    package_size: Optional[str] = Field(default=None, alias="packageSize")


class MonthlyGrantCallback(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    plan: Literal["free", "creator", "pro"]


# --- Responses --------------------------------------------------------------


class BalanceResponse(CamelModel):
    balance: int
    total_purchased: int = Field(alias="totalPurchased")
    total_used: int = Field(alias="totalUsed")


class LedgerEntryOut(CamelModel):
    id: int
    amount: int
    kind: str
    description: str
    balance_after: int = Field(alias="balanceAfter")
    created_at: datetime = Field(alias="createdAt")


class Pagination(CamelModel):
    page: int
    limit: int
    has_more: bool = Field(alias="hasMore")


class HistoryResponse(CamelModel):
    entries: List[LedgerEntryOut]
    pagination: Pagination


class DispatchResponse(CamelModel):
    success: bool = True
    owner_id: str = Field(alias="ownerId")
    dispatch_id: str = Field(alias="dispatchId")
    cost: int
    balance: int
    status: str


class CallbackResponse(CamelModel):
    success: bool
    owner_id: str = Field(alias="ownerId")
    message: str
    total: Optional[int] = None
    duplicate: bool = False
    refunded: int = 0


class ScriptDetailResponse(CamelModel):
    id: str
    topic: str
    model: Optional[str] = None
    status: str
    script: Optional[str] = None
    error: Optional[str] = None
    audio_files: List[dict] = Field(alias="audioFiles")
    media: List[dict]
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
