from datetime import datetime
from pydantic import BaseModel
from typing import Optional


class LibraryBookOut(BaseModel):
    id: int
    book_id: int
    order_id: int
    book_type: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    download_count: int
    last_download_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DownloadRequest(BaseModel):
    download_type: str = "download"


class DownloadOut(BaseModel):
    book_id: int
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    download_count: int
    remaining_downloads: int
