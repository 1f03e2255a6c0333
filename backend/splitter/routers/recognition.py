from fastapi import APIRouter, UploadFile, File, HTTPException

from ..config import get_settings
from ..models import RecognizedReceipt, RecognizeRequest
from ..services.recognition import RecognitionError, recognize_receipt

router = APIRouter(prefix="/recognize", tags=["Recognition"])


@router.post("", response_model=RecognizedReceipt)
async def recognize_upload(file: UploadFile = File(...)) -> RecognizedReceipt:
    """
    Recognize a receipt photo from a multipart/form-data upload.

    Returns the structured receipt; it is not applied to any session.
    """
    content = await file.read()
    if len(content) > get_settings().max_upload_bytes:
        raise HTTPException(status_code=413, detail="Image is too large")

    media_type = file.content_type or "image/jpeg"

    try:
        return await recognize_receipt(content, media_type)
    except RecognitionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Recognition failed: {str(e)}")


@router.post("/base64", response_model=RecognizedReceipt)
async def recognize_base64(request: RecognizeRequest) -> RecognizedReceipt:
    """Recognize a receipt photo sent as base64 JSON."""
    try:
        return await recognize_receipt(request.image_base64, request.media_type)
    except RecognitionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Recognition failed: {str(e)}")
