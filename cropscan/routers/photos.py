from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from fastapi.responses import PlainTextResponse
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging

from cropscan.errors import AnalysisNotReady, PhotoNotFound, StorageError
from cropscan.dependencies import get_ingestion_service, get_repository, get_synthesizer
from cropscan.schemas import (
    BatchRequest,
    BatchResponse,
    BlobCategory,
    CostEstimate,
    CropAnalysis,
    OwnerPhotosResponse,
    Photo,
    PhotoStatus,
    RecentPhotosResponse,
    Severity,
    Urgency,
)
from cropscan.services import IngestionService, PhotoRepository, ReportSynthesizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/photos", tags=["photos"])


def demo_photos(owner_id: int) -> List[Photo]:
    """Sample photos served when the record store cannot be reached."""
    now = datetime.now(timezone.utc)
    return [
        Photo(
            id=1,
            owner_id=owner_id,
            blob_handle="photos/demo_field_photo_1.jpg",
            original_name="field_photo_1.jpg",
            mime_type="image/jpeg",
            size_bytes=245760,
            status=PhotoStatus.COMPLETED,
            analysis=CropAnalysis(
                crop_name="Rice",
                disease_name="Leaf spot",
                confidence=85,
                severity=Severity.MEDIUM,
                urgency=Urgency.WITHIN_WEEK,
                estimated_yield_loss_pct=10,
                symptoms=["Brown lesions on lower leaves"],
                causes=["Fungal infection favoured by standing water"],
                treatments=["Apply a registered fungicide"],
                prevention=["Improve field drainage"],
                recommendations=["Apply fungicide", "Improve drainage"],
                cost_of_treatment=CostEstimate(low=20, high=60, currency="USD"),
            ),
            created_at=now - timedelta(hours=2),
        ),
        Photo(
            id=2,
            owner_id=owner_id,
            blob_handle="drone-data/demo_aerial_view.jpg",
            category=BlobCategory.DRONE_DATA,
            original_name="aerial_view.jpg",
            mime_type="image/jpeg",
            size_bytes=512000,
            status=PhotoStatus.COMPLETED,
            analysis=CropAnalysis(
                crop_name="Wheat",
                disease_name="healthy",
                confidence=92,
                severity=Severity.LOW,
                urgency=Urgency.MONITOR,
                estimated_yield_loss_pct=0,
                symptoms=[],
                causes=[],
                treatments=[],
                prevention=["Keep current irrigation schedule"],
                recommendations=["Continue current care routine"],
                cost_of_treatment=CostEstimate(low=0, high=0, currency="USD"),
            ),
            created_at=now - timedelta(hours=4),
        ),
    ]


@router.post("", response_model=Photo, status_code=201)
async def upload_photo(
    file: UploadFile = File(...),
    owner_id: int = Form(..., alias="ownerId"),
    category: BlobCategory = Form(BlobCategory.PHOTOS),
    ingestion: IngestionService = Depends(get_ingestion_service)
):
    """
    Upload a crop photo and run it through analysis.

    The photo comes back completed; when the vision service was unavailable
    the analysis is a provisional fallback (is_fallback=true).
    """
    # One byte past the limit is enough for validation to reject it
    contents = await file.read(ingestion.blob_store.max_upload_size + 1)
    mime_type = file.content_type or "application/octet-stream"
    logger.info(f"Upload from owner {owner_id}: {file.filename} ({mime_type}, {len(contents)} bytes)")

    return await ingestion.ingest(
        contents,
        filename=file.filename or "upload",
        mime_type=mime_type,
        owner_id=owner_id,
        category=category,
    )


@router.get("/recent", response_model=RecentPhotosResponse)
async def recent_photos(
    owner_id: int = Query(..., alias="ownerId"),
    limit: int = Query(10, ge=1, le=100),
    repository: PhotoRepository = Depends(get_repository)
):
    """Most recent photos for an owner, newest first"""
    try:
        photos = await repository.list_recent(owner_id, limit)
    except StorageError as e:
        logger.error(f"Record store unavailable, serving demo photos: {e}")
        return RecentPhotosResponse(photos=demo_photos(owner_id)[:limit], source="demo")

    return RecentPhotosResponse(photos=photos, source="store")


@router.get("/owner/{owner_id}", response_model=OwnerPhotosResponse)
async def owner_photos(
    owner_id: int,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    category: Optional[BlobCategory] = Query(None),
    repository: PhotoRepository = Depends(get_repository)
):
    """Page through an owner's photos, newest first, optionally one category only"""
    photos = await repository.list_for_owner(owner_id, limit=limit, offset=offset, category=category)
    total = await repository.count_for_owner(owner_id, category=category)
    return OwnerPhotosResponse(
        photos=photos,
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(photos) < total,
    )


@router.post("/batch", response_model=BatchResponse)
async def batch_photos(
    request: BatchRequest,
    ingestion: IngestionService = Depends(get_ingestion_service)
):
    """
    Reanalyze or delete several photos at once.

    Always 200; each id reports its own success or error.
    """
    logger.info(f"Batch {request.operation.value} for {len(request.photo_ids)} photos")
    results = await ingestion.batch(request.photo_ids, request.operation)
    succeeded = sum(1 for r in results if r.success)
    return BatchResponse(
        operation=request.operation,
        results=results,
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


@router.get("/{photo_id}", response_model=Photo)
async def get_photo(
    photo_id: int,
    repository: PhotoRepository = Depends(get_repository)
):
    photo = await repository.get(photo_id)
    if photo is None:
        raise PhotoNotFound(photo_id)
    return photo


@router.post("/{photo_id}/reanalyze", response_model=Photo)
async def reanalyze_photo(
    photo_id: int,
    ingestion: IngestionService = Depends(get_ingestion_service)
):
    """Re-run analysis on a completed or failed photo"""
    return await ingestion.reanalyze(photo_id)


@router.get("/{photo_id}/report")
async def get_report(
    photo_id: int,
    report_format: str = Query("text", alias="format", pattern="^(text|json)$"),
    repository: PhotoRepository = Depends(get_repository),
    synthesizer: ReportSynthesizer = Depends(get_synthesizer)
):
    """Analysis report as plain text (default) or JSON"""
    photo = await repository.get(photo_id)
    if photo is None:
        raise PhotoNotFound(photo_id)
    if photo.analysis is None:
        raise AnalysisNotReady(photo_id, photo.status.value)

    if report_format == "json":
        return {
            "photo_id": photo.id,
            "is_fallback": photo.is_fallback,
            "analysis": synthesizer.render_json(photo.analysis),
        }

    title = f"Photo #{photo.id} - {photo.original_name}"
    return PlainTextResponse(synthesizer.render(photo.analysis, title=title))


@router.delete("/{photo_id}", status_code=204)
async def delete_photo(
    photo_id: int,
    ingestion: IngestionService = Depends(get_ingestion_service)
):
    """Delete a photo record and its stored image"""
    await ingestion.delete(photo_id)
    return Response(status_code=204)
