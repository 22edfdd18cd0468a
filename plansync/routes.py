"""
HTTP and WebSocket routes for the plan sync API.

Every successful write schedules a broadcast as a background task, so it only
runs once the write has committed and cannot change the HTTP outcome.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, WebSocket

from plansync.broadcast import ChangeBroadcaster, ChangeEvent, EventType
from plansync.db import ProjectStore
from plansync.dependencies import get_broadcaster, get_project_store
from plansync.features import empty_feature_collection
from plansync.schemas import (
    MessageResponse,
    PlanUpdateRequest,
    PointFeature,
    ProjectImportRequest,
    ProjectSnapshotResponse,
    SettingsUpdateRequest,
)

router = APIRouter()


def _notify(
    background_tasks: BackgroundTasks,
    broadcaster: ChangeBroadcaster,
    event_type: EventType,
    payload: Optional[Any] = None,
) -> None:
    background_tasks.add_task(
        broadcaster.broadcast, ChangeEvent(type=event_type, payload=payload)
    )


@router.get("/project", response_model=ProjectSnapshotResponse)
def get_project(store: ProjectStore = Depends(get_project_store)):
    return store.fetch_snapshot().as_dict()


@router.post("/project/plan", response_model=MessageResponse)
def update_plan(
    payload: PlanUpdateRequest,
    background_tasks: BackgroundTasks,
    store: ProjectStore = Depends(get_project_store),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
):
    """
    Replace the background plan. Corners are cleared and all points removed,
    since their positions were anchored to the old image.
    """
    project = store.replace_plan(payload.planDataUrl, payload.width, payload.height)
    _notify(
        background_tasks,
        broadcaster,
        EventType.PLAN_UPDATE,
        {"project": project.as_dict(), "geojsonData": empty_feature_collection()},
    )
    return MessageResponse(message="Plan updated")


@router.post("/project/settings", response_model=MessageResponse)
def update_settings(
    payload: SettingsUpdateRequest,
    background_tasks: BackgroundTasks,
    store: ProjectStore = Depends(get_project_store),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
):
    updates = payload.model_dump(exclude_unset=True)
    if "opacity" in updates and updates["opacity"] is None:
        del updates["opacity"]
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    store.update_settings(updates)
    _notify(background_tasks, broadcaster, EventType.SETTINGS_UPDATE, updates)
    return MessageResponse(message="Settings updated")


@router.post("/points", response_model=MessageResponse)
def save_point(
    payload: PointFeature,
    background_tasks: BackgroundTasks,
    store: ProjectStore = Depends(get_project_store),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
):
    point_id = payload.properties.get("id")
    if point_id is None or point_id == "":
        raise HTTPException(status_code=400, detail="properties.id is required")
    point = store.upsert_point(str(point_id), payload.properties, payload.geometry)
    _notify(background_tasks, broadcaster, EventType.POINT_UPDATE, point.as_feature())
    return MessageResponse(message="Point saved")


@router.delete("/points/{point_id}", response_model=MessageResponse)
def delete_point(
    point_id: str,
    background_tasks: BackgroundTasks,
    store: ProjectStore = Depends(get_project_store),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
):
    store.delete_point(point_id)
    _notify(background_tasks, broadcaster, EventType.POINT_DELETE, {"id": point_id})
    return MessageResponse(message="Point deleted")


@router.post("/project/import", response_model=MessageResponse)
def import_project(
    payload: ProjectImportRequest,
    background_tasks: BackgroundTasks,
    store: ProjectStore = Depends(get_project_store),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
):
    """
    Overwrite the project and all points. Either everything is applied or,
    on any bad feature or store error, nothing is.
    """
    snapshot = store.import_project(payload.project.model_dump(), payload.geojsonData)
    _notify(
        background_tasks, broadcaster, EventType.PROJECT_IMPORT, snapshot.as_dict()
    )
    return MessageResponse(message="Project imported successfully")


async def realtime_updates(
    websocket: WebSocket,
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
):
    """Server-to-client channel; anything the client sends is ignored."""
    await broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        broadcaster.disconnect(websocket)
