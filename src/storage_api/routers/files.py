from typing import Optional

from fastapi import (
    APIRouter,
    Header,
    Path,
    Request,
    status,
)
from fastapi.responses import Response

from storage_api.schemas import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    ConfirmUploadRequest,
    FileMetadata,
    StorageInfoResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)
from storage_api.services.files import FileService

router = APIRouter()

USER_ID_HEADER = "X-User-Id"


def _file_service(request: Request) -> FileService:
    return request.app.state.file_service


@router.post("/files/upload-url", response_model=UploadUrlResponse, status_code=status.HTTP_201_CREATED)
def request_upload_url(
    request: Request,
    body: UploadUrlRequest,
    user_id: int = Header(..., alias=USER_ID_HEADER),
) -> UploadUrlResponse:
    """
    Reserve a file record and return a presigned URL to upload its bytes to.

    Fails with 413 when the declared size does not fit in the user's quota.
    """
    return _file_service(request).register_upload(
        user_id=user_id,
        file_name=body.file_name,
        size_bytes=body.file_size,
        content_type=body.content_type,
    )


@router.post("/files/{file_id}/confirm", response_model=FileMetadata)
async def confirm_upload(
    request: Request,
    file_id: int = Path(..., description="Id returned by the upload-url call"),
    body: Optional[ConfirmUploadRequest] = None,
    user_id: int = Header(..., alias=USER_ID_HEADER),
) -> FileMetadata:
    """
    Confirm that the client finished uploading and schedule the file's backup.

    The response carries the file's ``backupStatus``; a backup that could not
    be scheduled shows up as FAILED there without failing this call.
    """
    return await _file_service(request).confirm_upload(
        file_id, user_id, body.content_type if body else None
    )


@router.get("/files/{file_id}", response_model=FileMetadata)
def get_file(
    request: Request,
    file_id: int = Path(...),
    user_id: int = Header(..., alias=USER_ID_HEADER),
) -> FileMetadata:
    return _file_service(request).get_file(file_id, user_id)


@router.delete("/files/{file_id}")
def delete_file(
    request: Request,
    file_id: int = Path(...),
    user_id: int = Header(..., alias=USER_ID_HEADER),
) -> Response:
    _file_service(request).delete_file(file_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/files/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_files(
    request: Request,
    body: BulkDeleteRequest,
    user_id: int = Header(..., alias=USER_ID_HEADER),
) -> BulkDeleteResponse:
    return _file_service(request).bulk_delete_files(body.file_ids, user_id)


@router.get("/storage", response_model=StorageInfoResponse)
def get_storage_info(
    request: Request,
    user_id: int = Header(..., alias=USER_ID_HEADER),
) -> StorageInfoResponse:
    return _file_service(request).get_storage_info(user_id)
