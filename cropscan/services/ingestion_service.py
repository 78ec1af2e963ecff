"""
Ingestion Orchestrator

Runs one upload through the pipeline:
validate -> store blob -> extract metadata -> create record -> analyze -> persist result.

This is the only place that decides when to degrade to a fallback analysis.
Upstream failures never fail a photo; only local persistence errors do.
"""
import logging
import time
from typing import List, Optional

from cropscan.config import settings
from cropscan.errors import (
    AnalysisError,
    CropScanError,
    InvalidTransition,
    MetadataError,
    PhotoNotFound,
    StorageError,
)
from cropscan.schemas.analysis import SynthesizedAnalysis, UpstreamDiagnosis
from cropscan.schemas.photo import (
    BatchItemResult,
    BatchOperation,
    BlobCategory,
    ImageMetadata,
    Photo,
    PhotoCreate,
    PhotoStatus,
)
from cropscan.services.blob_store import BlobHandle, BlobStore
from cropscan.services.metadata_service import MetadataExtractor
from cropscan.services.photo_repository import PhotoRepository
from cropscan.services.report_service import ReportSynthesizer
from cropscan.services.validation import validate_upload
from cropscan.services.vision_client import PlantIdClient

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "Analysis was interrupted before its result was saved"


class IngestionService:

    def __init__(
        self,
        blob_store: BlobStore,
        metadata_extractor: MetadataExtractor,
        repository: PhotoRepository,
        vision_client: PlantIdClient,
        synthesizer: Optional[ReportSynthesizer] = None,
        analysis_retries: Optional[int] = None
    ):
        self.blob_store = blob_store
        self.metadata_extractor = metadata_extractor
        self.repository = repository
        self.vision_client = vision_client
        self.synthesizer = synthesizer or ReportSynthesizer()
        self.analysis_retries = settings.analysis_retries if analysis_retries is None else analysis_retries

    async def ingest(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        owner_id: int,
        category: BlobCategory = BlobCategory.PHOTOS
    ) -> Photo:
        """
        Store and analyze one uploaded image.

        Returns:
            The photo in its final state, normally completed

        Raises:
            ValidationError: input rejected, nothing stored
            StorageError: blob or record could not be stored, no record created
        """
        start = time.time()
        category = BlobCategory(category)

        # Validate up front so a rejected upload never reaches storage
        validate_upload(data, mime_type, category, self.blob_store.max_upload_size)

        handle = await self.blob_store.save(
            data, owner_id, category, mime_type=mime_type, filename=filename
        )

        metadata = await self._extract_metadata(handle)

        # A failure here leaves an orphan blob, swept later by purge_orphans
        photo = await self.repository.create(PhotoCreate(
            owner_id=owner_id,
            blob_handle=handle.key,
            blob_durable=handle.durable,
            category=category,
            original_name=filename or "upload",
            mime_type=mime_type,
            size_bytes=len(data),
            width=metadata.width if metadata else None,
            height=metadata.height if metadata else None,
            image_format=metadata.format if metadata else None,
            capture_location=metadata.gps if metadata else None,
        ))
        logger.info(f"Photo {photo.id} created for owner {owner_id} ({handle.key})")

        photo = await self._run_analysis(photo)
        logger.info(
            f"Ingest photo {photo.id}: status={photo.status.value}, "
            f"fallback={photo.is_fallback}, total={time.time() - start:.3f}s"
        )
        return photo

    async def reanalyze(self, photo_id: int) -> Photo:
        """
        Re-run analysis on an existing photo's blob.

        Raises:
            PhotoNotFound: unknown id
            InvalidTransition: the photo is still pending or analyzing
        """
        photo = await self.repository.update_status(photo_id, PhotoStatus.PENDING)
        return await self._run_analysis(photo)

    async def delete(self, photo_id: int) -> Photo:
        photo = await self.repository.delete(photo_id)
        if photo is None:
            raise PhotoNotFound(photo_id)
        await self.blob_store.delete(BlobHandle.from_key(photo.blob_handle))
        return photo

    async def batch(self, photo_ids: List[int], operation: BatchOperation) -> List[BatchItemResult]:
        """
        Apply reanalyze or delete to each id in turn.

        One id failing never stops the others; its error is reported in its result.
        """
        operation = BatchOperation(operation)
        results = []
        for photo_id in photo_ids:
            try:
                if operation == BatchOperation.ANALYZE:
                    photo = await self.reanalyze(photo_id)
                    results.append(BatchItemResult(
                        photo_id=photo_id,
                        success=photo.status == PhotoStatus.COMPLETED,
                        status=photo.status,
                        is_fallback=photo.is_fallback,
                        error=photo.error_reason,
                    ))
                else:
                    await self.delete(photo_id)
                    results.append(BatchItemResult(photo_id=photo_id, success=True))
            except CropScanError as e:
                logger.warning(f"Batch {operation.value} failed for photo {photo_id}: {e.message}")
                results.append(BatchItemResult(photo_id=photo_id, success=False, error=e.message))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch {operation.value}: {succeeded}/{len(results)} succeeded")
        return results

    async def recover_interrupted(self) -> int:
        """
        Mark photos stuck in pending or analyzing as failed so they can be reanalyzed.

        Only run this while no analysis is in flight against the same record
        store, i.e. at startup.

        Returns:
            Number of photos recovered
        """
        recovered = 0
        stuck = await self.repository.list_by_status([PhotoStatus.PENDING, PhotoStatus.ANALYZING])
        for photo in stuck:
            try:
                if photo.status == PhotoStatus.PENDING:
                    photo = await self.repository.update_status(photo.id, PhotoStatus.ANALYZING)
                await self.repository.update_status(photo.id, PhotoStatus.FAILED, error_reason=INTERRUPTED_REASON)
                recovered += 1
            except (InvalidTransition, PhotoNotFound) as e:
                # Moved on or deleted since the listing
                logger.info(f"Photo {photo.id} skipped during recovery: {e}")
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted photos, they can now be reanalyzed")
        return recovered

    async def _extract_metadata(self, handle: BlobHandle) -> Optional[ImageMetadata]:
        try:
            return await self.metadata_extractor.extract(handle)
        except (MetadataError, StorageError) as e:
            logger.warning(f"Metadata extraction failed for {handle.key}: {e}")
            return None

    async def _run_analysis(self, photo: Photo) -> Photo:
        photo = await self.repository.update_status(photo.id, PhotoStatus.ANALYZING)

        try:
            diagnosis = await self._analyze_with_retry(photo)
        except StorageError as e:
            return await self._mark_failed(photo, f"Image could not be read for analysis: {e.message}")

        result = self._synthesize(photo, diagnosis)
        try:
            return await self.repository.update_status(
                photo.id,
                PhotoStatus.COMPLETED,
                analysis=result.analysis,
                is_fallback=result.is_fallback,
            )
        except StorageError as e:
            return await self._mark_failed(photo, f"Analysis result could not be saved: {e.message}")

    async def _analyze_with_retry(self, photo: Photo) -> Optional[UpstreamDiagnosis]:
        """Returns None when the upstream could not produce a diagnosis."""
        handle = BlobHandle.from_key(photo.blob_handle)
        # Never more than one retry per analysis
        attempts = 1 + min(max(self.analysis_retries, 0), 1)

        for attempt in range(1, attempts + 1):
            try:
                start = time.time()
                diagnosis = await self.vision_client.analyze(handle)
                logger.info(
                    f"Photo {photo.id} analyzed via {diagnosis.source} "
                    f"in {time.time() - start:.3f}s (attempt {attempt})"
                )
                return diagnosis
            except AnalysisError as e:
                if e.retryable and attempt < attempts:
                    logger.warning(f"Photo {photo.id} analysis attempt {attempt} failed ({e.kind}), retrying: {e}")
                    continue
                logger.warning(f"Photo {photo.id} analysis failed ({e.kind}), using fallback: {e}")
                return None
            except (ValueError, TypeError, OverflowError) as e:
                logger.error(f"Photo {photo.id} upstream response could not be interpreted, using fallback: {e}")
                return None
        return None

    def _synthesize(self, photo: Photo, diagnosis: Optional[UpstreamDiagnosis]) -> SynthesizedAnalysis:
        try:
            return self.synthesizer.synthesize(diagnosis)
        except (ValueError, TypeError, OverflowError) as e:
            logger.error(f"Photo {photo.id} diagnosis could not be synthesized, using fallback: {e}")
            return self.synthesizer.synthesize(None)

    async def _mark_failed(self, photo: Photo, reason: str) -> Photo:
        logger.error(f"Photo {photo.id} failed: {reason}")
        try:
            return await self.repository.update_status(photo.id, PhotoStatus.FAILED, error_reason=reason)
        except StorageError as e:
            # Left in its current status; recover_interrupted releases it on the next start
            logger.error(f"Photo {photo.id} could not be marked failed, stays '{photo.status.value}': {e}")
            return photo
