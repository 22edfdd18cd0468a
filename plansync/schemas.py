"""
Pydantic schemas for the plan sync API.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PlanUpdateRequest(BaseModel):
    planDataUrl: str
    width: Optional[float] = None
    height: Optional[float] = None


class SettingsUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    point_schema: Optional[List[Dict[str, Any]]] = None
    plan_corners: Optional[Any] = None
    opacity: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class PointFeature(BaseModel):
    type: Literal["Feature"] = "Feature"
    properties: Dict[str, Any]
    geometry: Dict[str, Any]


class ProjectImportFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_data_url: Optional[str] = None
    plan_width: Optional[float] = None
    plan_height: Optional[float] = None
    plan_corners: Optional[Any] = None
    point_schema: Optional[List[Dict[str, Any]]] = None
    opacity: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ProjectImportRequest(BaseModel):
    project: ProjectImportFields
    # Features are checked by the store inside the import transaction.
    geojsonData: Optional[Dict[str, Any]] = None


class ProjectOut(BaseModel):
    id: str
    plan_data_url: Optional[str] = None
    plan_width: Optional[float] = None
    plan_height: Optional[float] = None
    plan_corners: Optional[Any] = None
    point_schema: List[Dict[str, Any]] = Field(default_factory=list)
    opacity: float


class FeatureCollectionOut(BaseModel):
    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[Dict[str, Any]]


class ProjectSnapshotResponse(BaseModel):
    project: ProjectOut
    geojsonData: FeatureCollectionOut


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    ok: bool
    clients: int
