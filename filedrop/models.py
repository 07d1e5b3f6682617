from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class UploadRequest:
    original_name: str
    content_type: Optional[str] = None
    declared_size: Optional[int] = None


@dataclass(frozen=True)
class StoredFile:
    storage_key: str
    original_name: str
    size_bytes: int
    created_at: datetime

    @property
    def download_url(self) -> str:
        return f"/downloads/{self.storage_key}"


class UploadResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    size: int
    download_url: str = Field(alias="downloadUrl")

    @classmethod
    def from_stored(cls, stored: StoredFile) -> "UploadResult":
        return cls(
            filename=stored.original_name,
            size=stored.size_bytes,
            download_url=stored.download_url,
        )
