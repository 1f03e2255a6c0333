import logging
import re
from uuid import uuid4

from fastapi import APIRouter, HTTPException

from ..models import (
    BillSummary,
    Receipt,
    RecognizedReceipt,
    SessionDeleteResponse,
    SessionReadResponse,
    SessionResponse,
    SessionSnapshot,
    SessionWriteRequest,
)
from ..services.allocation import generate_bill_summary
from ..services.coordinator import SessionCoordinator
from ..services.sessions import SessionRepository, StoreError, StoreResult, get_session_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/session", tags=["Sessions"])

SESSION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

SERVICE_UNAVAILABLE = "Service unavailable, please retry later"

ERROR_STATUS = {
    StoreError.CONNECTION_ERROR: 503,
    StoreError.NOT_FOUND: 404,
    StoreError.INVALID_DATA: 500,
    StoreError.UNKNOWN_ERROR: 500,
}

ERROR_DETAIL = {
    StoreError.CONNECTION_ERROR: SERVICE_UNAVAILABLE,
    StoreError.NOT_FOUND: "Session not found",
    StoreError.INVALID_DATA: "Stored session data is invalid",
    StoreError.UNKNOWN_ERROR: "Internal server error",
}


def validate_session_id(uuid: str) -> None:
    """Reject anything that is not a random (version 4) UUID."""
    if not SESSION_ID_PATTERN.match(uuid):
        raise HTTPException(status_code=400, detail="Invalid session ID format")


async def require_storage(repository: SessionRepository) -> None:
    """Fail fast with 503 when storage does not answer a ping."""
    if not await repository.health_check():
        raise HTTPException(status_code=503, detail=SERVICE_UNAVAILABLE)


def raise_for_error(result: StoreResult) -> None:
    if not result.ok:
        raise HTTPException(status_code=ERROR_STATUS[result.error], detail=ERROR_DETAIL[result.error])


@router.post("/new", response_model=SessionResponse)
async def create_session() -> SessionResponse:
    """Create a new, empty session under a fresh random id."""
    repository = get_session_repository()
    await require_storage(repository)

    uuid = str(uuid4())
    snapshot = SessionSnapshot()
    result = await repository.save(uuid, snapshot)
    raise_for_error(result)

    logger.info("Created session %s", uuid)
    return SessionResponse(uuid=uuid, data=snapshot)


@router.get("/{uuid}", response_model=SessionReadResponse)
async def read_session(uuid: str) -> SessionReadResponse:
    """Get the stored snapshot of a session with its timestamps."""
    validate_session_id(uuid)
    repository = get_session_repository()
    await require_storage(repository)

    result = await repository.get(uuid)
    raise_for_error(result)

    session = result.value
    return SessionReadResponse(
        uuid=session.uuid,
        data=session.data,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


@router.post("/{uuid}", response_model=SessionResponse)
async def write_session(uuid: str, request: SessionWriteRequest) -> SessionResponse:
    """
    Overwrite a session with a full snapshot.

    Transient client fields (loading flags, error strings) are not persisted.
    """
    validate_session_id(uuid)
    repository = get_session_repository()
    await require_storage(repository)

    result = await repository.save(uuid, request.data)
    raise_for_error(result)

    return SessionResponse(uuid=uuid, data=request.data)


@router.delete("/{uuid}", response_model=SessionDeleteResponse)
async def delete_session(uuid: str) -> SessionDeleteResponse:
    validate_session_id(uuid)
    repository = get_session_repository()
    await require_storage(repository)

    result = await repository.delete(uuid)
    raise_for_error(result)

    if not result.value:
        raise HTTPException(status_code=404, detail="Session not found")

    return SessionDeleteResponse(uuid=uuid)


@router.get("/{uuid}/summary", response_model=BillSummary)
async def get_summary(uuid: str) -> BillSummary:
    """Compute what everyone owes from the stored session."""
    validate_session_id(uuid)
    repository = get_session_repository()
    await require_storage(repository)

    result = await repository.get(uuid)
    raise_for_error(result)

    data = result.value.data
    return generate_bill_summary(data.receipts, data.people)


@router.post("/{uuid}/receipts/{receipt_id}/recognized", response_model=Receipt)
async def apply_recognized_receipt(
    uuid: str,
    receipt_id: str,
    recognized: RecognizedReceipt,
) -> Receipt:
    """
    Fold a recognized receipt into one of the session's receipts.

    The receipt's items are replaced by the recognized ones and tax and tip
    are redistributed, exactly as with manual entry. The session is saved
    before responding.
    """
    validate_session_id(uuid)
    repository = get_session_repository()
    await require_storage(repository)

    coordinator = SessionCoordinator(uuid, repository=repository)
    raise_for_error(await coordinator.open(create=False))

    try:
        receipt = coordinator.apply_recognized_receipt(receipt_id, recognized)
    except KeyError:
        coordinator.close()
        raise HTTPException(status_code=404, detail="Receipt not found")

    if not await coordinator.flush():
        raise HTTPException(
            status_code=ERROR_STATUS[coordinator.last_error],
            detail=ERROR_DETAIL[coordinator.last_error],
        )

    return receipt
