"""Hierarchical entities of an OMERO server.

Screens contain plates, plates contain plate acquisitions and wells, wells
contain images. Projects contain datasets, datasets contain images.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityKind(Enum):
    """The fixed taxonomy of hierarchical server objects."""

    PROJECT = "Project"
    DATASET = "Dataset"
    IMAGE = "Image"
    SCREEN = "Screen"
    PLATE = "Plate"
    PLATE_ACQUISITION = "PlateAcquisition"
    WELL = "Well"

    @property
    def uri_label(self) -> str:
        """Label used in ``/webclient/?show=<label>-<id>`` links."""
        match self:
            case EntityKind.PROJECT:
                return "project"
            case EntityKind.DATASET:
                return "dataset"
            case EntityKind.IMAGE:
                return "image"
            case EntityKind.SCREEN:
                return "screen"
            case EntityKind.PLATE:
                return "plate"
            case EntityKind.PLATE_ACQUISITION:
                return "run"
            case EntityKind.WELL:
                return "well"

    @property
    def api_name(self) -> str:
        """Type name used by the webclient ``paths_to_object`` endpoint."""
        match self:
            case EntityKind.PROJECT:
                return "project"
            case EntityKind.DATASET:
                return "dataset"
            case EntityKind.IMAGE:
                return "image"
            case EntityKind.SCREEN:
                return "screen"
            case EntityKind.PLATE:
                return "plate"
            case EntityKind.PLATE_ACQUISITION:
                return "acquisition"
            case EntityKind.WELL:
                return "well"

    @classmethod
    def from_api_name(cls, api_name: str) -> EntityKind | None:
        for kind in cls:
            if kind.api_name == api_name:
                return kind
        return None


class EntityRef(NamedTuple):
    """Lightweight (kind, id) pair identifying a server entity."""

    kind: EntityKind
    id: int

    def __str__(self) -> str:
        return f"{self.kind.value} with ID {self.id}"


class _OmeroModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Experimenter(_OmeroModel):
    """A user of the server."""

    id: int = Field(..., alias="@id", description="Experimenter ID")
    first_name: str = Field("", alias="FirstName")
    middle_name: str = Field("", alias="MiddleName")
    last_name: str = Field("", alias="LastName")
    user_name: str | None = Field(None, alias="UserName")

    @property
    def full_name(self) -> str:
        return " ".join(
            part for part in (self.first_name, self.middle_name, self.last_name) if part
        )


class ExperimenterGroup(_OmeroModel):
    """A group of experimenters."""

    id: int = Field(..., alias="@id", description="Group ID")
    name: str | None = Field(None, alias="Name")


class OmeroDetails(_OmeroModel):
    owner: Experimenter | None = None
    group: ExperimenterGroup | None = None


class ServerEntity(_OmeroModel):
    """Base of every entity returned by the JSON API.

    Instances are immutable: the resolver cache holds the only copy and
    hands out the same object to every caller.
    """

    kind: ClassVar[EntityKind]

    id: int = Field(..., alias="@id", description="Entity ID")
    name: str | None = Field(None, alias="Name", description="Entity name")
    details: OmeroDetails | None = Field(None, alias="omero:details")

    @property
    def ref(self) -> EntityRef:
        return EntityRef(self.kind, self.id)

    @property
    def owner(self) -> Experimenter | None:
        return self.details.owner if self.details else None

    @property
    def group(self) -> ExperimenterGroup | None:
        return self.details.group if self.details else None

    @property
    def has_children(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name!r} (ID {self.id})"


class Project(ServerEntity):
    kind: ClassVar[EntityKind] = EntityKind.PROJECT

    description: str | None = Field(None, alias="Description")
    child_count: int = Field(0, alias="omero:childCount")

    @property
    def has_children(self) -> bool:
        return self.child_count > 0


class Dataset(ServerEntity):
    kind: ClassVar[EntityKind] = EntityKind.DATASET

    description: str | None = Field(None, alias="Description")
    child_count: int = Field(0, alias="omero:childCount")

    @property
    def has_children(self) -> bool:
        return self.child_count > 0


class PhysicalSize(_OmeroModel):
    value: float = Field(..., alias="Value")
    unit: str | None = Field(None, alias="Symbol")


class ImagePixels(_OmeroModel):
    size_x: int = Field(0, alias="SizeX")
    size_y: int = Field(0, alias="SizeY")
    size_z: int = Field(1, alias="SizeZ")
    size_c: int = Field(1, alias="SizeC")
    size_t: int = Field(1, alias="SizeT")
    pixel_type: str | None = Field(None, alias="Type")
    physical_size_x: PhysicalSize | None = Field(None, alias="PhysicalSizeX")
    physical_size_y: PhysicalSize | None = Field(None, alias="PhysicalSizeY")
    physical_size_z: PhysicalSize | None = Field(None, alias="PhysicalSizeZ")

    @field_validator("pixel_type", mode="before")
    @classmethod
    def _unwrap_pixel_type(cls, v: object) -> object:
        # The JSON API wraps it as {"@type": "...PixelsType", "value": "uint8"}
        if isinstance(v, dict):
            return v.get("value")
        return v


class Image(ServerEntity):
    kind: ClassVar[EntityKind] = EntityKind.IMAGE

    acquisition_date: int | None = Field(
        None, alias="AcquisitionDate", description="Milliseconds since epoch"
    )
    pixels: ImagePixels = Field(..., alias="Pixels")


class Screen(ServerEntity):
    kind: ClassVar[EntityKind] = EntityKind.SCREEN

    description: str | None = Field(None, alias="Description")
    child_count: int = Field(0, alias="omero:childCount")

    @property
    def has_children(self) -> bool:
        return self.child_count > 0


class Plate(ServerEntity):
    kind: ClassVar[EntityKind] = EntityKind.PLATE

    columns: int = Field(0, alias="Columns")
    rows: int = Field(0, alias="Rows")

    @property
    def number_of_wells(self) -> int:
        return self.columns * self.rows

    @property
    def has_children(self) -> bool:
        return True


class PlateAcquisition(ServerEntity):
    """A run of a plate.

    ``number_of_wells`` is not part of the server payload; the resolver sets
    it from the parent plate.
    """

    kind: ClassVar[EntityKind] = EntityKind.PLATE_ACQUISITION

    well_sample_indices: list[int] = Field(
        default_factory=list, alias="omero:wellsampleIndex"
    )
    start_time: int | None = Field(None, alias="StartTime")
    number_of_wells: int = 0

    @property
    def min_well_sample_index(self) -> int | None:
        return self.well_sample_indices[0] if self.well_sample_indices else None

    @property
    def max_well_sample_index(self) -> int | None:
        return self.well_sample_indices[1] if len(self.well_sample_indices) > 1 else None

    @property
    def has_children(self) -> bool:
        return self.number_of_wells > 0


class _IdOnly(_OmeroModel):
    id: int = Field(..., alias="@id")


class WellSample(_OmeroModel):
    image: _IdOnly | None = Field(None, alias="Image")
    plate_acquisition: _IdOnly | None = Field(None, alias="PlateAcquisition")


class Well(ServerEntity):
    """A well of a plate.

    ``plate_acquisition_owner_id`` is not part of the server payload; it is
    the plate acquisition the well was listed from, or -1.
    """

    kind: ClassVar[EntityKind] = EntityKind.WELL

    row: int = Field(0, alias="Row")
    column: int = Field(0, alias="Column")
    well_samples: list[WellSample] = Field(default_factory=list, alias="WellSamples")
    plate_acquisition_owner_id: int = -1

    def image_ids(self, plate_acquisition_owner_id: int = -1) -> list[int]:
        """IDs of the images of this well.

        Args:
            plate_acquisition_owner_id: Only keep images of this plate
                acquisition; negative keeps every image.
        """
        return [
            sample.image.id
            for sample in self.well_samples
            if sample.image is not None
            and (
                plate_acquisition_owner_id < 0
                or (
                    sample.plate_acquisition is not None
                    and sample.plate_acquisition.id == plate_acquisition_owner_id
                )
            )
        ]

    @property
    def has_children(self) -> bool:
        if self.plate_acquisition_owner_id > -1:
            return any(
                sample.plate_acquisition is not None
                and sample.plate_acquisition.id == self.plate_acquisition_owner_id
                for sample in self.well_samples
            )
        return any(sample.plate_acquisition is None for sample in self.well_samples)


ENTITY_CLASSES: dict[EntityKind, type[ServerEntity]] = {
    EntityKind.PROJECT: Project,
    EntityKind.DATASET: Dataset,
    EntityKind.IMAGE: Image,
    EntityKind.SCREEN: Screen,
    EntityKind.PLATE: Plate,
    EntityKind.PLATE_ACQUISITION: PlateAcquisition,
    EntityKind.WELL: Well,
}


class Shape(BaseModel):
    """A shape of a region of interest.

    Only the identifying keys are modelled; every other key of the server
    payload is preserved as is.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    type: str = Field(..., alias="@type")
    id: int | None = Field(None, alias="@id")
    roi_id: int = Field(-1, exclude=True)

    @property
    def old_id(self) -> str:
        """``<roi id>:<shape id>`` identifier used when deleting shapes."""
        return f"{self.roi_id}:{self.id}"

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
