from urllib.parse import quote

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import StreamingResponse

from proposal_chat.errors import AccessDenied, ChatError
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.attachment_uploader import AttachmentUploader
from proposal_chat.services.message_store import MessageStore
from proposal_chat.utils.dependencies import get_message_store, get_uploader, get_viewer, http_error


router = APIRouter(prefix="/attachments", tags=["attachments"])


@router.post("")
async def upload_attachment(
    file: UploadFile = File(...),
    viewer: Viewer = Depends(get_viewer),
    uploader: AttachmentUploader = Depends(get_uploader),
):
    # read one byte past the cap so oversized files are rejected without buffering them whole
    data = await file.read(uploader.max_bytes + 1)
    try:
        attachment = await uploader.upload(data, file.filename or "attachment", viewer.id, content_type=file.content_type)
    except ChatError as exc:
        raise http_error(exc) from exc
    return attachment.model_dump()


@router.get("/{file_id}/{file_name}")
async def download_attachment(
    file_id: str,
    file_name: str,
    viewer: Viewer = Depends(get_viewer),
    store: MessageStore = Depends(get_message_store),
    uploader: AttachmentUploader = Depends(get_uploader),
):
    try:
        grid_out = await uploader.open_download(file_id)
        metadata = grid_out.metadata or {}
        # the uploader, or anyone who can open a conversation the file was sent in
        if metadata.get("owner_id") != viewer.id and not await store.can_view_attachment(file_id, viewer.id):
            raise AccessDenied(f"User {viewer.id} cannot read attachment {file_id}")
    except ChatError as exc:
        raise http_error(exc) from exc

    async def _chunks():
        while True:
            chunk = await grid_out.readchunk()
            if not chunk:
                break
            yield chunk

    media_type = metadata.get("content_type") or "application/octet-stream"
    name = metadata.get("original_name") or file_name
    headers = {"Content-Disposition": f"inline; filename*=UTF-8''{quote(name)}"}
    return StreamingResponse(_chunks(), media_type=media_type, headers=headers)
