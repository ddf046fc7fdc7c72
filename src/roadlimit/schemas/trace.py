from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from roadlimit.utils.geo import normalize_bearing


class TraceSample(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lat: float = Field(ge=-90.0, le=90.0, validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(ge=-180.0, le=180.0, validation_alias=AliasChoices("lon", "lng", "longitude"))
    bearing: float | None = None
    timestamp: str | float | None = None

    @model_validator(mode="after")
    def normalize(self) -> "TraceSample":
        self.bearing = normalize_bearing(self.bearing)
        return self
