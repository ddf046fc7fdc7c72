from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

LatLon = tuple[float, float]


class RoadSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    limit: int
    geometry: tuple[LatLon, ...]
    fetched_at: float
    name: str | None = None
    highway: str | None = None

    @field_validator("geometry")
    @classmethod
    def geometry_not_empty(cls, value: tuple[LatLon, ...]) -> tuple[LatLon, ...]:
        if not value:
            raise ValueError("geometry must contain at least one point")
        return value


class QueryRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    south: float
    west: float
    north: float
    east: float
    fetched_at: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def to_overpass_bbox(self) -> str:
        return f"{self.south:.7f},{self.west:.7f},{self.north:.7f},{self.east:.7f}"


class UserOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    road_id: int
    limit: int
    lat: float
    lon: float
    submitted_at: float

    def expires_at(self, ttl_seconds: float) -> float:
        return self.submitted_at + ttl_seconds

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now >= self.expires_at(ttl_seconds)


class RoadMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment: RoadSegment
    distance_m: float

    @property
    def road_id(self) -> int:
        return self.segment.id

    @property
    def limit(self) -> int:
        return self.segment.limit


class OverpassPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lat: float
    lon: float


class OverpassElement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    id: int
    tags: dict[str, str] = Field(default_factory=dict)
    geometry: list[OverpassPoint | None] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def stringify_tags(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items() if v is not None}
        return value

    def points(self) -> list[LatLon]:
        return [(p.lat, p.lon) for p in self.geometry if p is not None]


class OverpassResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    elements: list[Any] = Field(default_factory=list)
    remark: str | None = None
