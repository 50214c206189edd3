"""
Assets API Router - source asset lookup and deletion.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from sermonclips.auth import verify_api_key
from sermonclips.dependencies import get_storage, get_store
from sermonclips.schemas.analysis import parse_analysis_state
from sermonclips.schemas.responses import AssetResponse, DeleteAssetResponse, HighlightResponse
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageError, StorageGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assets", tags=["Assets"])


@router.get("/{asset_id}", response_model=AssetResponse)
async def get_asset(asset_id: str, store: RecordStore = Depends(get_store)) -> AssetResponse:
    """Get a source asset with its analysis state and highlights."""
    asset = await store.get_asset(asset_id)
    if asset is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source asset not found: {asset_id}",
        )

    highlights = await store.list_highlights(asset_id)
    return AssetResponse(
        id=asset.id,
        owner_id=asset.owner_id,
        title=asset.title,
        video_url=asset.video_url,
        analysis=parse_analysis_state(asset.analysis_state),
        highlights=[HighlightResponse.model_validate(h) for h in highlights],
        created_at=asset.created_at,
        updated_at=asset.updated_at,
    )


@router.delete("/{asset_id}", response_model=DeleteAssetResponse)
async def delete_asset(
    asset_id: str,
    store: RecordStore = Depends(get_store),
    storage: StorageGateway = Depends(get_storage),
    _: None = Depends(verify_api_key),
) -> DeleteAssetResponse:
    """
    Delete a source asset, its highlights and clips.

    Stored objects (source video, clip videos and thumbnails) are removed
    best effort after the records are gone.
    """
    deleted = await store.delete_asset(asset_id)
    if deleted is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source asset not found: {asset_id}",
        )

    keys = [deleted.storage_path]
    for url in deleted.clip_urls:
        key = storage.key_from_url(url)
        if key:
            keys.append(key)

    objects_deleted = 0
    for key in keys:
        try:
            await storage.delete(key)
            objects_deleted += 1
        except StorageError as e:
            logger.warning(f"Failed to delete object {key} for asset {asset_id}: {e}")

    return DeleteAssetResponse(
        asset_id=asset_id,
        highlights_deleted=deleted.highlights_deleted,
        objects_deleted=objects_deleted,
    )
