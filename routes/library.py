from typing import List, Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.db import get_db
from models.user import User
from schemas.library import DownloadOut, DownloadRequest, LibraryBookOut
from services import entitlements

router = APIRouter(prefix="/library", tags=["library"])


@router.get("/", response_model=List[LibraryBookOut])
def my_library(book_type: Optional[str] = None, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return entitlements.list_library(db, current_user.id, book_type=book_type)


@router.post("/{book_id}/download", response_model=DownloadOut)
def download_book(
    book_id: int,
    request: Request,
    data: Optional[DownloadRequest] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_book = entitlements.record_download(
        db,
        current_user.id,
        book_id,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        download_type=data.download_type if data else "download",
    )
    return {
        "book_id": user_book.book_id,
        "file_path": user_book.file_path,
        "mime_type": user_book.mime_type,
        "download_count": user_book.download_count,
        "remaining_downloads": max(0, settings.DOWNLOAD_LIMIT - user_book.download_count),
    }
